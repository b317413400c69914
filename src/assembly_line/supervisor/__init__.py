"""Worker supervision for station assignments."""

from assembly_line.supervisor.records import WorkerRecordStore
from assembly_line.supervisor.supervisor import (
    ProgressCallback,
    SignalOutcome,
    SpawnResult,
    WorkerHandle,
    WorkerOutcome,
    WorkerSupervisor,
)

__all__ = [
    "ProgressCallback",
    "SignalOutcome",
    "SpawnResult",
    "WorkerHandle",
    "WorkerOutcome",
    "WorkerRecordStore",
    "WorkerSupervisor",
]
