"""Worker record persistence under the workers directory."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from pathlib import Path

from assembly_line.board.contracts import BoardLayout, load_json, write_json
from assembly_line.board.models import WorkerRecord, WorkerStatus

logger = logging.getLogger(__name__)

RECORD_PREFIX = "WORKER-"


class WorkerRecordStore:
    """One JSON document per (unit, station) assignment.

    Updates from the stream reader thread and the waiting thread are
    serialised by a process-local lock.
    """

    def __init__(self, layout: BoardLayout) -> None:
        self.layout = layout
        self._lock = threading.Lock()

    def write(self, record: WorkerRecord) -> Path:
        path = self.layout.worker_record_path(record.unit_id, record.station)
        with self._lock:
            write_json(path, record.to_document())
        return path

    def read(self, unit_id: str, station: int) -> WorkerRecord | None:
        path = self.layout.worker_record_path(unit_id, station)
        if not path.exists():
            return None
        return _parse_record(path)

    def update(
        self,
        unit_id: str,
        station: int,
        mutate: Callable[[WorkerRecord], None],
    ) -> WorkerRecord | None:
        path = self.layout.worker_record_path(unit_id, station)
        with self._lock:
            if not path.exists():
                return None
            record = _parse_record(path)
            if record is None:
                return None
            mutate(record)
            write_json(path, record.to_document())
            return record

    def list_records(self) -> list[WorkerRecord]:
        directory = self.layout.workers_dir
        if not directory.is_dir():
            return []
        records: list[WorkerRecord] = []
        for path in sorted(directory.glob(f"{RECORD_PREFIX}*.json")):
            record = _parse_record(path)
            if record is not None:
                records.append(record)
        return records

    def running_count(self, station: int) -> int:
        return sum(
            1
            for record in self.list_records()
            if record.station == station and record.status == WorkerStatus.RUNNING
        )


def _parse_record(path: Path) -> WorkerRecord | None:
    try:
        return WorkerRecord.from_document(load_json(path))
    except (OSError, TypeError, KeyError, ValueError, json.JSONDecodeError) as error:
        logger.warning("Skipping unreadable worker record %s: %s", path, error)
        return None
