"""
Warning state engine.

Decides, per (region, city, warning-kind) tuple, whether a new observation is
a no-op, a new or changed warning, a clearance, or a stale row to clean up.

Planning is a pure function of (live rows, observations, city whitelist);
applying the plan writes it through the Database inside the caller's
transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .database import Database
from .errors import MalformedReport, StateConflict
from .report import (
    NO_WARNINGS_TEXT,
    CityObservation,
    NoWarningsInRegion,
    Observation,
    WarningStatus,
)

logger = logging.getLogger(__name__)


class NotificationEvent(Enum):
    NEW_WARNING = "new_warning"
    STATUS_CHANGED = "status_changed"
    CLEARED = "cleared"
    CLEANUP = "cleanup"
    ALL_CLEAR = "all_clear"


@dataclass(frozen=True)
class NotificationRequest:
    """A request for the notification collaborator."""
    region: str
    city: str
    kind: str
    old_status: Optional[str]
    new_status: str
    event: NotificationEvent
    summary: str
    report_file: Optional[str] = None


@dataclass(frozen=True)
class WarningRow:
    """A live city_warning row."""
    id: int
    region: str
    city: str
    kind: str
    status: WarningStatus
    raw_text: str
    kind_code: str = ""

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "WarningRow":
        return cls(
            id=record["id"],
            region=record["region"],
            city=record["city"],
            kind=record["kind"],
            status=WarningStatus(record["status"]),
            raw_text=record["raw_text"],
            kind_code=record.get("kind_code") or "",
        )

    @property
    def is_active(self) -> bool:
        return self.status is not WarningStatus.CLEARED


class WriteOp(Enum):
    INSERT = "insert"
    UPDATE = "update"
    TOUCH = "touch"
    SOFT_DELETE = "soft_delete"


@dataclass(frozen=True)
class StateWrite:
    op: WriteOp
    region: str
    city: str
    kind: str
    row_id: Optional[int] = None
    status: Optional[WarningStatus] = None
    raw_text: str = ""
    kind_code: str = ""


@dataclass
class ReconcileResult:
    region: str
    writes: List[StateWrite] = field(default_factory=list)
    notifications: List[NotificationRequest] = field(default_factory=list)
    conflicts: List[StateConflict] = field(default_factory=list)
    all_clear: bool = False

    @property
    def mutations(self) -> int:
        return len(self.writes)


class WarningStateEngine:
    """
    State machine per (region, city, kind):

        Absent -> Active(issued) -> Active(continued) -> Cleared -> soft-deleted

    A region-wide "no warnings" observation clears and soft-deletes every
    live tuple, with one ALL_CLEAR notification per previously active tuple.
    """

    def plan(
        self,
        region: str,
        cities: Iterable[str],
        rows: Sequence[WarningRow],
        observations: Sequence[Observation],
        cleared_history: Iterable[Tuple[str, str]] = (),
    ) -> ReconcileResult:
        """
        Compute transitions without touching storage.

        ``cleared_history`` lists (city, kind) tuples whose last row was a
        clearance; a repeated clearance for those is expected republication.
        """
        if not observations:
            raise MalformedReport(f"No observations to reconcile for {region}")

        whitelist = set(cities)
        result = ReconcileResult(region=region)
        retired = set(cleared_history)
        live = self._index_rows(region, whitelist, rows, result)

        city_observations = [o for o in observations if isinstance(o, CityObservation)]
        if not city_observations and any(isinstance(o, NoWarningsInRegion) for o in observations):
            self._plan_all_clear(region, live, result)
            return result

        observed: Dict[Tuple[str, str], CityObservation] = {}
        for obs in city_observations:
            if obs.city not in whitelist:
                continue
            observed.setdefault((obs.city, obs.kind), obs)

        for key, obs in observed.items():
            self._plan_observation(region, live.get(key), obs, result, key in retired)

        for key in sorted(live):
            if key not in observed:
                self._plan_absent(region, live[key], result)

        return result

    def apply(
        self,
        store: Database,
        result: ReconcileResult,
        report_file: Optional[str] = None,
        now: Optional[str] = None
    ) -> None:
        """Write a plan through the store. Call inside a transaction."""
        now = now or datetime.now(timezone.utc).isoformat()

        for write in result.writes:
            if write.op is WriteOp.INSERT:
                store.insert_warning(
                    region=write.region,
                    city=write.city,
                    kind=write.kind,
                    kind_code=write.kind_code,
                    status=write.status.value,
                    raw_text=write.raw_text,
                    report_file=report_file,
                    updated_at=now,
                )
            elif write.op is WriteOp.UPDATE:
                store.update_warning(write.row_id, write.status.value, write.raw_text, report_file, now)
            elif write.op is WriteOp.TOUCH:
                store.touch_warning(write.row_id, report_file, now)
            elif write.op is WriteOp.SOFT_DELETE:
                store.soft_delete_warning(write.row_id, now)

    def reconcile(
        self,
        store: Database,
        region: str,
        cities: Iterable[str],
        observations: Sequence[Observation],
        report_file: Optional[str] = None,
        now: Optional[str] = None
    ) -> ReconcileResult:
        """Plan against the stored rows of a region and apply the plan."""
        rows = [WarningRow.from_record(r) for r in store.get_live_warnings(region)]
        result = self.plan(region, cities, rows, observations, store.get_cleared_history(region))
        self.apply(store, result, report_file=report_file, now=now)
        return result

    # =========================================================================
    # Planning helpers
    # =========================================================================

    def _index_rows(
        self,
        region: str,
        whitelist: set,
        rows: Sequence[WarningRow],
        result: ReconcileResult
    ) -> Dict[Tuple[str, str], WarningRow]:
        live: Dict[Tuple[str, str], WarningRow] = {}
        for row in sorted(rows, key=lambda r: r.id):
            if row.region != region or row.city not in whitelist:
                continue
            key = (row.city, row.kind)
            previous = live.get(key)
            if previous is not None:
                self._conflict(
                    result, region, row.city, row.kind,
                    f"duplicate live rows {previous.id} and {row.id}; keeping the newest",
                )
                result.writes.append(self._write(WriteOp.SOFT_DELETE, previous))
            live[key] = row
        return live

    def _plan_all_clear(self, region: str, live: Dict[Tuple[str, str], WarningRow], result: ReconcileResult) -> None:
        result.all_clear = True
        for key in sorted(live):
            row = live[key]
            if row.is_active:
                result.writes.append(
                    self._write(WriteOp.UPDATE, row, status=WarningStatus.CLEARED, raw_text=NO_WARNINGS_TEXT)
                )
                result.notifications.append(self._notify(
                    region, row.city, row.kind, row.status, WarningStatus.CLEARED,
                    NotificationEvent.ALL_CLEAR, NO_WARNINGS_TEXT,
                ))
            result.writes.append(self._write(WriteOp.SOFT_DELETE, row))

    def _plan_observation(
        self,
        region: str,
        row: Optional[WarningRow],
        obs: CityObservation,
        result: ReconcileResult,
        retired: bool = False
    ) -> None:
        if row is None:
            if obs.status is WarningStatus.CLEARED:
                if retired:
                    logger.debug(f"Clearance for {region} / {obs.city} / {obs.kind} already applied")
                    return
                self._conflict(result, region, obs.city, obs.kind, "clearance for a warning never announced")
                return
            self._plan_new(region, obs, None, result)
            return

        if row.is_active:
            if obs.status is WarningStatus.CLEARED:
                result.writes.append(self._write(WriteOp.UPDATE, row, status=WarningStatus.CLEARED, raw_text=obs.raw_status))
                result.notifications.append(self._notify(
                    region, obs.city, obs.kind, row.status, WarningStatus.CLEARED,
                    NotificationEvent.CLEARED, obs.raw_status,
                ))
            elif obs.raw_status == row.raw_text:
                result.writes.append(self._write(WriteOp.TOUCH, row))
            else:
                result.writes.append(self._write(WriteOp.UPDATE, row, status=obs.status, raw_text=obs.raw_status))
                result.notifications.append(self._notify(
                    region, obs.city, obs.kind, row.status, obs.status,
                    NotificationEvent.STATUS_CHANGED, obs.raw_status,
                ))
            return

        # Cleared rows never return to Active; a new warning starts a new row
        result.writes.append(self._write(WriteOp.SOFT_DELETE, row))
        if obs.status is not WarningStatus.CLEARED:
            self._plan_new(region, obs, row.status, result)

    def _plan_new(
        self,
        region: str,
        obs: CityObservation,
        old_status: Optional[WarningStatus],
        result: ReconcileResult
    ) -> None:
        result.writes.append(StateWrite(
            op=WriteOp.INSERT,
            region=region,
            city=obs.city,
            kind=obs.kind,
            status=WarningStatus.ISSUED,
            raw_text=obs.raw_status,
            kind_code=obs.kind_code,
        ))
        result.notifications.append(self._notify(
            region, obs.city, obs.kind, old_status, WarningStatus.ISSUED,
            NotificationEvent.NEW_WARNING, obs.raw_status,
        ))

    def _plan_absent(self, region: str, row: WarningRow, result: ReconcileResult) -> None:
        result.writes.append(self._write(WriteOp.SOFT_DELETE, row))
        if row.is_active:
            result.notifications.append(self._notify(
                region, row.city, row.kind, row.status, WarningStatus.CLEARED,
                NotificationEvent.CLEANUP, f"{row.raw_text} (no longer reported by {region})",
            ))

    def _write(
        self,
        op: WriteOp,
        row: WarningRow,
        status: Optional[WarningStatus] = None,
        raw_text: str = ""
    ) -> StateWrite:
        return StateWrite(
            op=op,
            region=row.region,
            city=row.city,
            kind=row.kind,
            row_id=row.id,
            status=status,
            raw_text=raw_text,
            kind_code=row.kind_code,
        )

    def _notify(
        self,
        region: str,
        city: str,
        kind: str,
        old_status: Optional[WarningStatus],
        new_status: WarningStatus,
        event: NotificationEvent,
        raw_text: str
    ) -> NotificationRequest:
        return NotificationRequest(
            region=region,
            city=city,
            kind=kind,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            event=event,
            summary=f"{city}:{kind}:{raw_text}",
        )

    def _conflict(self, result: ReconcileResult, region: str, city: str, kind: str, message: str) -> None:
        conflict = StateConflict(message, region=region, city=city, kind=kind)
        logger.warning(f"State conflict for {region} / {city} / {kind}: {message}")
        result.conflicts.append(conflict)
