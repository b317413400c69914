"""Andon registry: escalation alerts from worker sentinels and manual pulls."""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path

from assembly_line.board.contracts import BoardLayout, load_json, utc_now, write_json
from assembly_line.board.models import AndonAlert
from assembly_line.errors import AlertNotFoundError

logger = logging.getLogger(__name__)

ALERT_PREFIX = "ANDON-"


@dataclass(slots=True)
class ResolveOutcome:
    """Result of a resolve call; ``newly_resolved`` is False for a repeat call."""

    alert: AndonAlert
    newly_resolved: bool
    paths: list[Path]


@dataclass(slots=True)
class _StoredAlert:
    alert: AndonAlert
    path: Path


class AndonRegistry:
    """Alerts live in two partitions: the andon directory (manual alerts and
    worker reports) and the workers directory (escalation sentinels).

    The same sentinel alert may be present in both; listings show it once and
    resolution flips every copy.
    """

    def __init__(self, layout: BoardLayout) -> None:
        self.layout = layout

    def raise_alert(
        self,
        *,
        unit_id: str,
        station: int | None,
        trigger: str,
        question: str | None = None,
    ) -> AndonAlert:
        now = utc_now()
        alert = AndonAlert(
            id=f"{ALERT_PREFIX}{int(now.timestamp() * 1000)}-{secrets.token_hex(2)}",
            unit_id=unit_id,
            station=station,
            trigger=trigger,
            question=question,
            timestamp=now.isoformat(),
        )
        write_json(self.layout.andon_dir / f"{alert.id}.json", alert.to_document())
        logger.info("Andon raised %s for %s station %s", alert.id, unit_id, station)
        return alert

    def list_alerts(self, *, include_resolved: bool = False) -> list[AndonAlert]:
        """Alerts in encounter order of the partitions, one entry per id."""

        seen: set[str] = set()
        alerts: list[AndonAlert] = []
        for stored in self._stored_alerts():
            if stored.alert.id in seen:
                continue
            seen.add(stored.alert.id)
            if stored.alert.resolved and not include_resolved:
                continue
            alerts.append(stored.alert)
        return alerts

    def resolve(self, alert_ref: str, resolution: str) -> ResolveOutcome:
        """Resolve one alert by exact id or id prefix.

        An exact id wins. Among prefix matches, unresolved alerts with the
        earliest timestamp (then lowest id) are chosen. When only resolved
        alerts match, nothing is rewritten.
        """

        ref = alert_ref.strip()
        if not ref:
            raise AlertNotFoundError(alert_ref)
        stored_alerts = self._stored_alerts()
        exact = [stored for stored in stored_alerts if stored.alert.id == ref]
        matches = exact or [
            stored for stored in stored_alerts if _matches_prefix(stored.alert.id, ref)
        ]
        if not matches:
            raise AlertNotFoundError(alert_ref)

        unresolved = [stored for stored in matches if not stored.alert.resolved]
        candidates = unresolved or matches
        chosen = min(candidates, key=lambda stored: (stored.alert.timestamp, stored.alert.id))
        copies = [stored for stored in matches if stored.alert.id == chosen.alert.id]
        if not unresolved:
            return ResolveOutcome(
                alert=chosen.alert,
                newly_resolved=False,
                paths=[stored.path for stored in copies],
            )

        resolved_at = utc_now().isoformat()
        paths: list[Path] = []
        for stored in copies:
            if stored.alert.resolved:
                continue
            raw = load_json(stored.path)
            raw.update({"resolved": True, "resolution": resolution, "resolved_at": resolved_at})
            write_json(stored.path, raw)
            paths.append(stored.path)
        alert = chosen.alert
        alert.resolved = True
        alert.resolution = resolution
        alert.resolved_at = resolved_at
        logger.info("Andon resolved %s (%d copies)", alert.id, len(paths))
        return ResolveOutcome(alert=alert, newly_resolved=True, paths=paths)

    def read_escalation_sentinel(self, unit_id: str, station: int) -> AndonAlert | None:
        path = self.layout.escalation_sentinel_path(unit_id, station)
        if not path.exists():
            return None
        return _parse_alert(path)

    def mirror_escalation(self, unit_id: str, station: int) -> AndonAlert | None:
        """Copy an escalation sentinel into the andon directory if the worker did not."""

        sentinel_path = self.layout.escalation_sentinel_path(unit_id, station)
        if not sentinel_path.exists():
            return None
        alert = _parse_alert(sentinel_path)
        if alert is None:
            return None
        report_path = self.layout.escalation_report_path(unit_id, station)
        if not report_path.exists():
            write_json(report_path, alert.to_document())
            logger.info("Mirrored escalation sentinel %s into andon registry", alert.id)
        return alert

    def _stored_alerts(self) -> list[_StoredAlert]:
        stored: list[_StoredAlert] = []
        for directory in (self.layout.andon_dir, self.layout.workers_dir):
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if not _is_alert_file(path):
                    continue
                alert = _parse_alert(path)
                if alert is not None:
                    stored.append(_StoredAlert(alert=alert, path=path))
        return stored


def _is_alert_file(path: Path) -> bool:
    return path.is_file() and path.name.startswith(ALERT_PREFIX) and path.suffix == ".json"


def _parse_alert(path: Path) -> AndonAlert | None:
    try:
        raw = load_json(path)
    except (OSError, TypeError, json.JSONDecodeError) as error:
        logger.warning("Skipping unreadable andon file %s: %s", path, error)
        return None
    return AndonAlert.from_document(raw, default_id=path.stem)


def _matches_prefix(alert_id: str, ref: str) -> bool:
    return alert_id.startswith(ref) or alert_id.startswith(f"{ALERT_PREFIX}{ref}")
