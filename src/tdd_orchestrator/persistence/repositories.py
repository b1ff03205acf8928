"""
tdd-orchestrator — repositories over the state database.

Purpose
- Typed read/write access to work items, stream cursors, applied-signal keys,
  escalation records, the audit trail, attention windows and operator control
  requests.

A phase step is persisted through :meth:`WorkItemRepo.record_step`, which
writes the item, its audit entries, the applied signal key and any escalation
record in one transaction. Either all of it lands or none of it does, which
is what makes replay after a crash safe.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Final, cast

from tdd_orchestrator.domain import ids
from tdd_orchestrator.domain.models import (
    AttentionWindow,
    AuditEntry,
    EscalationRecord,
    HandoffReport,
    StreamCursor,
    WindowCloseReason,
    WindowStatus,
    WorkItem,
    WorkItemStatus,
    iso8601z,
    utc_now,
)
from tdd_orchestrator.persistence.state_db import RowValue, SQLParams, StateDB

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Mapping

_MAX_PAGE_SIZE: Final[int] = 1_000
CONTROL_KINDS: Final[frozenset[str]] = frozenset({"cancel", "pause"})


@dataclass(frozen=True, slots=True)
class ControlRequest:
    """An operator request (pause/cancel) waiting for the window owner to act on it."""

    id: int
    window_id: str
    kind: str
    work_item_id: str | None
    created_at: datetime


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class WorkItemRepo(_BaseRepo):
    """Repository for work items and the per-item applied-signal ledger."""

    def add(self, work_item: WorkItem) -> WorkItem:
        with self._db.transaction() as conn:
            existing = self._db.query_one(
                "SELECT id FROM work_items WHERE id = ?", (work_item.id,), conn=conn
            )
            if existing is not None:
                raise ValueError(f"work_item already exists: {work_item.id}")
            self._persist_row(conn, work_item)
        return work_item

    def save(self, work_item: WorkItem) -> WorkItem:
        with self._db.transaction() as conn:
            self._persist_row(conn, work_item)
        return work_item

    def get(self, work_item_id: str) -> WorkItem | None:
        ids.validate_work_item_id(work_item_id)
        row = self._db.query_one(
            "SELECT payload_json FROM work_items WHERE id = ?", (work_item_id,)
        )
        if row is None:
            return None
        return WorkItem.from_json(_row_text(row, "payload_json", "work_items.payload_json"))

    def get_by_ticket(self, ticket_id: str) -> WorkItem | None:
        """Return the most recently created item for ``ticket_id``."""
        row = self._db.query_one(
            """
            SELECT payload_json FROM work_items
            WHERE ticket_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (ticket_id,),
        )
        if row is None:
            return None
        return WorkItem.from_json(_row_text(row, "payload_json", "work_items.payload_json"))

    def list_items(
        self,
        *,
        statuses: Sequence[WorkItemStatus | str] | None = None,
        project_ref: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WorkItem]:
        self._validate_page(limit, offset)
        params: list[object] = []
        clauses: list[str] = []
        if statuses is not None:
            parsed = [WorkItemStatus(item).value for item in statuses]
            if not parsed:
                return []
            clauses.append(f"status IN ({','.join('?' for _ in parsed)})")
            params.extend(parsed)
        if project_ref is not None:
            clauses.append("project_ref = ?")
            params.append(project_ref)

        sql = "SELECT payload_json FROM work_items"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?"
        params.extend((limit, offset))

        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [
            WorkItem.from_json(_row_text(row, "payload_json", "work_items.payload_json"))
            for row in rows
        ]

    def list_queued(self, *, limit: int = _MAX_PAGE_SIZE) -> list[WorkItem]:
        """Queued items, oldest first."""
        return self.list_items(statuses=[WorkItemStatus.QUEUED], limit=limit)

    def count_by_status(self) -> dict[str, int]:
        rows = self._db.query_all(
            "SELECT status, COUNT(*) AS n FROM work_items GROUP BY status ORDER BY status"
        )
        return {str(row["status"]): int(cast("int", row["n"])) for row in rows}

    def record_step(
        self,
        work_item: WorkItem,
        *,
        audit_entries: Iterable[AuditEntry] = (),
        applied_signal_key: str | None = None,
        escalation: EscalationRecord | None = None,
    ) -> WorkItem:
        """Persist one phase-machine step atomically."""

        with self._db.transaction() as conn:
            self._persist_row(conn, work_item)
            for entry in audit_entries:
                _insert_audit(self._db, conn, entry)
            if applied_signal_key is not None:
                self._db.execute(
                    """
                    INSERT OR IGNORE INTO applied_signals (work_item_id, signal_key, applied_at)
                    VALUES (?, ?, ?)
                    """,
                    (work_item.id, applied_signal_key, iso8601z(utc_now())),
                    conn=conn,
                )
            if escalation is not None:
                _insert_escalation(self._db, conn, escalation)
        return work_item

    def record_resume(
        self, work_item: WorkItem, *, audit_entries: Iterable[AuditEntry] = ()
    ) -> int:
        """Persist a manual resume and clear the item's open escalations together.

        Returns the number of escalations cleared.
        """

        with self._db.transaction() as conn:
            self._persist_row(conn, work_item)
            cleared = _clear_escalations(self._db, conn, work_item.id)
            for entry in audit_entries:
                _insert_audit(self._db, conn, entry)
        return cleared

    def is_applied(self, work_item_id: str, signal_key: str) -> bool:
        row = self._db.query_one(
            "SELECT 1 AS hit FROM applied_signals WHERE work_item_id = ? AND signal_key = ?",
            (work_item_id, signal_key),
        )
        return row is not None

    def applied_keys(self, work_item_id: str) -> frozenset[str]:
        rows = self._db.query_all(
            "SELECT signal_key FROM applied_signals WHERE work_item_id = ?", (work_item_id,)
        )
        return frozenset(_row_text(row, "signal_key", "applied_signals.signal_key") for row in rows)

    def requeue_active(self) -> list[str]:
        """Return items left ``active`` by a dead window to the queue."""

        requeued: list[str] = []
        with self._db.transaction() as conn:
            rows = self._db.query_all(
                "SELECT payload_json FROM work_items WHERE status = ? ORDER BY created_at, id",
                (WorkItemStatus.ACTIVE.value,),
                conn=conn,
            )
            for row in rows:
                item = WorkItem.from_json(
                    _row_text(row, "payload_json", "work_items.payload_json")
                )
                item.status = WorkItemStatus.QUEUED
                item.updated_at = utc_now()
                self._persist_row(conn, item)
                requeued.append(item.id)
        return requeued

    def _persist_row(self, conn: sqlite3.Connection, work_item: WorkItem) -> None:
        reason = work_item.escalation_reason.value if work_item.escalation_reason else None
        self._db.execute(
            """
            INSERT INTO work_items (
                id, ticket_id, project_ref, phase, status, escalation_reason,
                created_at, updated_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                ticket_id = excluded.ticket_id,
                project_ref = excluded.project_ref,
                phase = excluded.phase,
                status = excluded.status,
                escalation_reason = excluded.escalation_reason,
                updated_at = excluded.updated_at,
                payload_json = excluded.payload_json
            """,
            (
                work_item.id,
                work_item.ticket_id,
                work_item.project_ref,
                work_item.phase.value,
                work_item.status.value,
                reason,
                iso8601z(work_item.created_at),
                iso8601z(work_item.updated_at),
                work_item.to_json(),
            ),
            conn=conn,
        )


class CursorRepo(_BaseRepo):
    """Durable stream cursors keyed by stream id."""

    def get(self, stream_id: str) -> StreamCursor | None:
        row = self._db.query_one(
            """
            SELECT stream_id, path, epoch, byte_offset, sequence, inode, size
            FROM stream_cursors WHERE stream_id = ?
            """,
            (stream_id,),
        )
        if row is None:
            return None
        return StreamCursor.from_dict(
            {
                "stream_id": row["stream_id"],
                "path": row["path"],
                "epoch": row["epoch"],
                "offset": row["byte_offset"],
                "sequence": row["sequence"],
                "inode": row["inode"],
                "size": row["size"],
            }
        )

    def save(self, cursor: StreamCursor) -> StreamCursor:
        self._db.execute(
            """
            INSERT INTO stream_cursors (
                stream_id, path, epoch, byte_offset, sequence, inode, size, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(stream_id) DO UPDATE SET
                path = excluded.path,
                epoch = excluded.epoch,
                byte_offset = excluded.byte_offset,
                sequence = excluded.sequence,
                inode = excluded.inode,
                size = excluded.size,
                updated_at = excluded.updated_at
            """,
            (
                cursor.stream_id,
                cursor.path,
                cursor.epoch,
                cursor.offset,
                cursor.sequence,
                cursor.inode,
                cursor.size,
                iso8601z(utc_now()),
            ),
        )
        return cursor


class EscalationRepo(_BaseRepo):
    def add(self, record: EscalationRecord) -> EscalationRecord:
        with self._db.transaction() as conn:
            _insert_escalation(self._db, conn, record)
        return record

    def get(self, escalation_id: str) -> EscalationRecord | None:
        row = self._db.query_one(
            "SELECT payload_json FROM escalation_records WHERE id = ?", (escalation_id,)
        )
        if row is None:
            return None
        return EscalationRecord.from_json(
            _row_text(row, "payload_json", "escalation_records.payload_json")
        )

    def list_open(self, *, limit: int = 100, offset: int = 0) -> list[EscalationRecord]:
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT payload_json FROM escalation_records
            WHERE cleared_at IS NULL
            ORDER BY created_at ASC, id ASC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        return [
            EscalationRecord.from_json(
                _row_text(row, "payload_json", "escalation_records.payload_json")
            )
            for row in rows
        ]

    def list_for_work_item(self, work_item_id: str) -> list[EscalationRecord]:
        rows = self._db.query_all(
            """
            SELECT payload_json FROM escalation_records
            WHERE work_item_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (work_item_id,),
        )
        return [
            EscalationRecord.from_json(
                _row_text(row, "payload_json", "escalation_records.payload_json")
            )
            for row in rows
        ]


class AuditRepo(_BaseRepo):
    """Append-only audit trail; rows can never be updated or deleted."""

    def append(self, entry: AuditEntry) -> AuditEntry:
        with self._db.transaction() as conn:
            _insert_audit(self._db, conn, entry)
        return entry

    def list_for(self, work_item_id: str) -> list[AuditEntry]:
        rows = self._db.query_all(
            """
            SELECT work_item_id, occurred_at, from_phase, to_phase, signal_id, note
            FROM audit_trail
            WHERE work_item_id = ?
            ORDER BY seq ASC
            """,
            (work_item_id,),
        )
        return [AuditEntry.from_dict(row) for row in rows]


class AttentionWindowRepo(_BaseRepo):
    def open(self, window: AttentionWindow) -> AttentionWindow:
        self._db.execute(
            """
            INSERT INTO attention_windows (id, status, started_at, closed_at, pid, payload_json)
            VALUES (?, ?, ?, NULL, ?, ?)
            """,
            (
                window.id,
                window.status.value,
                iso8601z(window.started_at),
                window.pid,
                window.to_json(),
            ),
        )
        return window

    def save(self, window: AttentionWindow) -> AttentionWindow:
        self._db.execute(
            """
            UPDATE attention_windows
            SET status = ?, closed_at = ?, pid = ?, payload_json = ?
            WHERE id = ?
            """,
            (
                window.status.value,
                iso8601z(window.closed_at) if window.closed_at is not None else None,
                window.pid,
                window.to_json(),
                window.id,
            ),
        )
        return window

    def get(self, window_id: str) -> AttentionWindow | None:
        row = self._db.query_one(
            "SELECT payload_json FROM attention_windows WHERE id = ?", (window_id,)
        )
        if row is None:
            return None
        return AttentionWindow.from_json(
            _row_text(row, "payload_json", "attention_windows.payload_json")
        )

    def list_open(self) -> list[AttentionWindow]:
        rows = self._db.query_all(
            """
            SELECT payload_json FROM attention_windows
            WHERE status = ?
            ORDER BY started_at DESC, id DESC
            """,
            (WindowStatus.OPEN.value,),
        )
        return [
            AttentionWindow.from_json(
                _row_text(row, "payload_json", "attention_windows.payload_json")
            )
            for row in rows
        ]

    def latest(self) -> AttentionWindow | None:
        row = self._db.query_one(
            """
            SELECT payload_json FROM attention_windows
            ORDER BY started_at DESC, id DESC
            LIMIT 1
            """
        )
        if row is None:
            return None
        return AttentionWindow.from_json(
            _row_text(row, "payload_json", "attention_windows.payload_json")
        )

    def close(self, window: AttentionWindow, report: HandoffReport) -> AttentionWindow:
        window.status = WindowStatus.CLOSED
        window.closed_at = report.closed_at
        window.close_reason = report.close_reason
        window.elapsed_seconds = report.elapsed_seconds
        self._db.execute(
            """
            UPDATE attention_windows
            SET status = ?, closed_at = ?, payload_json = ?, report_json = ?
            WHERE id = ?
            """,
            (
                window.status.value,
                iso8601z(report.closed_at),
                window.to_json(),
                report.to_json(),
                window.id,
            ),
        )
        return window

    def mark_abandoned(self, window_id: str) -> AttentionWindow | None:
        window = self.get(window_id)
        if window is None:
            return None
        window.status = WindowStatus.ABANDONED
        window.closed_at = utc_now()
        return self.save(window)

    def get_report(self, window_id: str) -> HandoffReport | None:
        row = self._db.query_one(
            "SELECT report_json FROM attention_windows WHERE id = ?", (window_id,)
        )
        if row is None or row.get("report_json") is None:
            return None
        return HandoffReport.from_dict(
            _load_json_object(
                _row_text(row, "report_json", "attention_windows.report_json"),
                "attention_windows.report_json",
            )
        )

    def last_close_reason(self) -> WindowCloseReason | None:
        window = self.latest()
        return None if window is None else window.close_reason


class ControlRequestRepo(_BaseRepo):
    """Cross-process mailbox from ``pause``/``cancel`` invocations to the window owner."""

    def request(self, window_id: str, kind: str, *, work_item_id: str | None = None) -> int:
        if kind not in CONTROL_KINDS:
            raise ValueError(f"kind must be one of {sorted(CONTROL_KINDS)}")
        with self._db.transaction() as conn:
            self._db.execute(
                """
                INSERT INTO control_requests (window_id, kind, work_item_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (window_id, kind, work_item_id, iso8601z(utc_now())),
                conn=conn,
            )
            row = self._db.query_one("SELECT last_insert_rowid() AS id", conn=conn)
        if row is None:
            raise RuntimeError("control request insert returned no row id")
        return int(cast("int", row["id"]))

    def pending(self, window_id: str) -> list[ControlRequest]:
        rows = self._db.query_all(
            """
            SELECT id, window_id, kind, work_item_id, created_at
            FROM control_requests
            WHERE window_id = ? AND consumed_at IS NULL
            ORDER BY id ASC
            """,
            (window_id,),
        )
        return [
            ControlRequest(
                id=int(cast("int", row["id"])),
                window_id=_row_text(row, "window_id", "control_requests.window_id"),
                kind=_row_text(row, "kind", "control_requests.kind"),
                work_item_id=cast("str | None", row.get("work_item_id")),
                created_at=datetime.fromisoformat(
                    _row_text(row, "created_at", "control_requests.created_at").replace(
                        "Z", "+00:00"
                    )
                ),
            )
            for row in rows
        ]

    def consume(self, request_id: int) -> None:
        self._db.execute(
            "UPDATE control_requests SET consumed_at = ? WHERE id = ? AND consumed_at IS NULL",
            (iso8601z(utc_now()), request_id),
        )


def _insert_audit(db: StateDB, conn: sqlite3.Connection, entry: AuditEntry) -> None:
    db.execute(
        """
        INSERT INTO audit_trail (work_item_id, occurred_at, from_phase, to_phase, signal_id, note)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            entry.work_item_id,
            iso8601z(entry.occurred_at),
            entry.from_phase.value if entry.from_phase is not None else None,
            entry.to_phase.value,
            entry.signal_id,
            entry.note,
        ),
        conn=conn,
    )


def _insert_escalation(db: StateDB, conn: sqlite3.Connection, record: EscalationRecord) -> None:
    db.execute(
        """
        INSERT INTO escalation_records (
            id, work_item_id, phase, reason, created_at, cleared_at, payload_json
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.id,
            record.work_item_id,
            record.phase.value,
            record.reason.value,
            iso8601z(record.created_at),
            iso8601z(record.cleared_at) if record.cleared_at is not None else None,
            record.to_json(),
        ),
        conn=conn,
    )


def _clear_escalations(db: StateDB, conn: sqlite3.Connection, work_item_id: str) -> int:
    rows = db.query_all(
        """
        SELECT payload_json FROM escalation_records
        WHERE work_item_id = ? AND cleared_at IS NULL
        """,
        (work_item_id,),
        conn=conn,
    )
    now = utc_now()
    for row in rows:
        record = EscalationRecord.from_json(
            _row_text(row, "payload_json", "escalation_records.payload_json")
        )
        record.cleared_at = now
        db.execute(
            "UPDATE escalation_records SET cleared_at = ?, payload_json = ? WHERE id = ?",
            (iso8601z(now), record.to_json(), record.id),
            conn=conn,
        )
    return len(rows)


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _load_json_object(payload: str, path: str) -> dict[str, object]:
    try:
        loaded = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON ({exc})") from exc
    if not isinstance(loaded, dict):
        raise ValueError(f"{path}: JSON root must be object")
    return cast("dict[str, object]", loaded)


__all__ = [
    "CONTROL_KINDS",
    "AttentionWindowRepo",
    "AuditRepo",
    "ControlRequest",
    "ControlRequestRepo",
    "CursorRepo",
    "EscalationRepo",
    "WorkItemRepo",
]
