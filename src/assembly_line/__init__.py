"""Assembly line controller for station-based CLI agent workflows."""

__version__ = "0.2.0"
