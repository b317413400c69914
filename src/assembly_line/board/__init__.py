"""Unit board: store, pipeline transitions, andon alerts and metrics."""
