"""Persistent unit records partitioned by board location."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from assembly_line.board.contracts import (
    UNIT_SUFFIX,
    BoardLayout,
    load_json,
    utc_now_iso,
    write_json,
)
from assembly_line.board.ledger import IdLedger
from assembly_line.board.models import HistoryEntry, Unit
from assembly_line.errors import InvalidLocationError, UnitNotFoundError

logger = logging.getLogger(__name__)

UNIT_ID_PREFIX = "UNIT-"
UNIT_ID_WIDTH = 3
UNIT_COUNTER = "unit"
_UNIT_ID_NUMBER = re.compile(rf"^{UNIT_ID_PREFIX}(\d+)$")


@dataclass(slots=True)
class StoredUnit:
    """Unit together with the partition it was found in."""

    unit: Unit
    location: str
    path: Path


class UnitStore:
    """Filesystem-backed store; the partition directory is the authoritative location.

    Mutations are read-modify-write without locking. Two controller
    invocations mutating the same unit at once may lose an update.
    """

    def __init__(
        self,
        layout: BoardLayout,
        *,
        station_numbers: tuple[int, ...],
        ledger: IdLedger,
    ) -> None:
        self.layout = layout
        self.station_numbers = station_numbers
        self.ledger = ledger

    @property
    def locations(self) -> list[str]:
        return self.layout.locations(self.station_numbers)

    def init_layout(self) -> None:
        for directory in self.layout.all_dirs(self.station_numbers):
            directory.mkdir(parents=True, exist_ok=True)
        self.ledger.init_schema()

    def create(self, unit: Unit, *, location: str) -> StoredUnit:
        """Persist a new unit; its id must not exist in any partition."""

        self._require_location(location)
        existing = self.find(unit.id)
        if existing is not None:
            raise ValueError(f"Unit already exists: {unit.id} at {existing.location}")
        unit.status = location
        path = self.layout.unit_path(unit.id, location)
        write_json(path, unit.to_document())
        logger.info("Created %s at %s", unit.id, location)
        return StoredUnit(unit=unit, location=location, path=path)

    def find(self, unit_id: str) -> StoredUnit | None:
        for location in self.locations:
            path = self.layout.unit_path(unit_id, location)
            if path.exists():
                return StoredUnit(
                    unit=Unit.from_document(load_json(path)),
                    location=location,
                    path=path,
                )
        return None

    def read(self, unit_id: str) -> StoredUnit:
        stored = self.find(unit_id)
        if stored is None:
            raise UnitNotFoundError(unit_id)
        return stored

    def relocate(self, unit_id: str, from_location: str, to_location: str) -> Unit:
        """Move a unit between partitions and append a history entry.

        The document is renamed into the destination first, so it is present
        in exactly one partition at every instant; the content rewrite that
        follows is itself atomic and is undone by renaming back on failure.
        """

        self._require_location(to_location)
        from_path = self.layout.unit_path(unit_id, from_location)
        if not from_path.exists():
            stored = self.find(unit_id)
            if stored is None:
                raise UnitNotFoundError(unit_id)
            raise InvalidLocationError(unit_id, stored.location, f"move from {from_location}")

        unit = Unit.from_document(load_json(from_path))
        unit.status = to_location
        unit.history.append(
            HistoryEntry(
                timestamp=utc_now_iso(),
                event="moved",
                from_location=from_location,
                to_location=to_location,
            ),
        )

        to_path = self.layout.unit_path(unit_id, to_location)
        to_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(from_path, to_path)
        try:
            write_json(to_path, unit.to_document())
        except BaseException:
            os.replace(to_path, from_path)
            raise
        logger.info("Moved %s: %s -> %s", unit_id, from_location, to_location)
        return unit

    def list_by_location(self, location: str) -> list[Unit]:
        """Units in one partition, ordered by file name."""

        return [Unit.from_document(load_json(path)) for path in self._unit_files(location)]

    def count(self, location: str) -> int:
        return len(self._unit_files(location))

    def all_ids(self) -> list[str]:
        ids: list[str] = []
        for location in self.locations:
            ids.extend(path.name[: -len(UNIT_SUFFIX)] for path in self._unit_files(location))
        return ids

    def next_id(self) -> str:
        """Allocate the next identifier.

        The ledger counter is raised to at least the highest numeric suffix
        present on the board, so ids created outside the ledger are honoured.
        """

        numbers = [
            int(match.group(1))
            for match in (_UNIT_ID_NUMBER.match(unit_id) for unit_id in self.all_ids())
            if match is not None
        ]
        self.ledger.init_schema()
        value = self.ledger.allocate(UNIT_COUNTER, floor=max(numbers, default=0))
        return format_unit_id(value)

    def _unit_files(self, location: str) -> list[Path]:
        directory = self.layout.location_dir(location)
        if not directory.is_dir():
            return []
        return sorted(
            path
            for path in directory.iterdir()
            if path.is_file() and path.name.endswith(UNIT_SUFFIX) and not path.name.startswith(".")
        )

    def _require_location(self, location: str) -> None:
        if location not in self.locations:
            raise ValueError(f"Unknown board location: {location!r}")


def format_unit_id(value: int) -> str:
    return f"{UNIT_ID_PREFIX}{value:0{UNIT_ID_WIDTH}d}"
