"""
auth/audit.py -- Append-only audit trail.

record() is best-effort by contract: an audit write failure is reported on
the "authcore.audit" logger and swallowed, so the caller's primary operation
never fails because its audit record could not be written. Nothing in the
codebase updates or deletes audit rows.

query() and export_csv() are read-only and exist for reporting collaborators
(admin audit screen, compliance CSV download).

CSV export neutralizes spreadsheet formula injection (CWE-1236): audit rows
carry attacker-influenced text (identifiers typed into a login form,
user-agent headers, error messages), so any cell starting with = + - or @ is
prefixed with a tab and opened as text.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import uuid

from sqlalchemy import and_, or_, select
from sqlalchemy.engine import Row

from auth.database import Database, audit_events
from auth.errors import AuditWriteFailed, StorageUnavailable
from auth.models import AuditAction, AuditEvent, AuditFilter
from core.clock import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger("authcore.audit")

_FORMULA_PREFIXES = ("=", "+", "-", "@")

_CSV_HEADERS = [
    "id",
    "timestamp",
    "actor_principal_id",
    "actor_identifier",
    "role",
    "action",
    "entity_type",
    "entity_id",
    "success",
    "error_message",
    "ip",
    "user_agent",
    "metadata",
]


def _sanitize_csv_cell(value) -> str:
    if value is None:
        return ""
    text = str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def _csv_row(e: AuditEvent) -> list[str]:
    return [
        _sanitize_csv_cell(v)
        for v in (
            e.id,
            to_iso(e.timestamp) if e.timestamp else "",
            e.actor_principal_id,
            e.actor_identifier,
            e.role,
            e.action.value,
            e.entity_type,
            e.entity_id,
            "yes" if e.success else "no",
            e.error_message,
            e.ip,
            e.user_agent,
            json.dumps(e.metadata, sort_keys=True) if e.metadata else "",
        )
    ]


class AuditLogger:
    """Writes and reads AuditEvent records."""

    def __init__(
        self,
        db: Database,
        clock: Clock = utc_now,
        page_size: int = 50,
        max_page_size: int = 500,
    ) -> None:
        self._db = db
        self._clock = clock
        self._page_size = page_size
        self._max_page_size = max_page_size

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def record(self, event: AuditEvent) -> None:
        """Append one event. Never raises."""
        try:
            self._insert(event)
        except Exception:
            logger.exception(
                "Failed to write audit event action=%s success=%s",
                getattr(event.action, "value", event.action),
                event.success,
            )

    def _insert(self, event: AuditEvent) -> None:
        event_id = uuid.uuid4().hex
        timestamp = self._clock()
        try:
            with self._db.begin() as conn:
                conn.execute(
                    audit_events.insert().values(
                        id=event_id,
                        timestamp=to_iso(timestamp),
                        actor_principal_id=event.actor_principal_id,
                        actor_identifier=event.actor_identifier,
                        role=event.role,
                        action=AuditAction(event.action).value,
                        entity_type=event.entity_type,
                        entity_id=event.entity_id,
                        metadata=json.dumps(event.metadata, default=str) if event.metadata else None,
                        success=bool(event.success),
                        error_message=event.error_message,
                        ip=event.ip,
                        user_agent=event.user_agent,
                    )
                )
        except StorageUnavailable as exc:
            raise AuditWriteFailed(str(exc)) from exc
        event.id = event_id
        event.timestamp = timestamp

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def query(self, criteria: AuditFilter | None = None) -> list[AuditEvent]:
        """Return matching events, newest first unless criteria.ascending is set.

        limit defaults to the configured page size and is clamped to the
        maximum page size.
        """
        criteria = criteria or AuditFilter()
        limit = criteria.limit if criteria.limit is not None else self._page_size
        limit = max(1, min(limit, self._max_page_size))
        order = audit_events.c.timestamp.asc() if criteria.ascending else audit_events.c.timestamp.desc()
        tiebreak = audit_events.c.seq.asc() if criteria.ascending else audit_events.c.seq.desc()
        stmt = select(audit_events).order_by(order, tiebreak).limit(limit).offset(max(0, criteria.offset))
        conditions = self._conditions(criteria)
        if conditions:
            stmt = stmt.where(*conditions)
        with self._db.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_event(r) for r in rows]

    def export_csv(self, criteria: AuditFilter | None = None) -> str:
        """Render matching events as CSV, walking every page.

        Pages are keyed on (timestamp, seq) of the last row written, not on an
        offset, so events recorded while the export runs are neither repeated
        nor allowed to push an earlier row out of the walk. limit and offset
        in criteria are ignored.
        """
        criteria = criteria or AuditFilter()
        c = audit_events.c
        if criteria.ascending:
            stmt = select(audit_events).order_by(c.timestamp.asc(), c.seq.asc())
        else:
            stmt = select(audit_events).order_by(c.timestamp.desc(), c.seq.desc())
        stmt = stmt.limit(self._max_page_size)
        conditions = self._conditions(criteria)
        if conditions:
            stmt = stmt.where(*conditions)

        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(_CSV_HEADERS)
        page_stmt = stmt
        while True:
            with self._db.connect() as conn:
                rows = conn.execute(page_stmt).fetchall()
            for row in rows:
                writer.writerow(_csv_row(_row_to_event(row)))
            if len(rows) < self._max_page_size:
                break
            last_ts, last_seq = rows[-1].timestamp, rows[-1].seq
            if criteria.ascending:
                after = or_(c.timestamp > last_ts, and_(c.timestamp == last_ts, c.seq > last_seq))
            else:
                after = or_(c.timestamp < last_ts, and_(c.timestamp == last_ts, c.seq < last_seq))
            page_stmt = stmt.where(after)
        return buf.getvalue()

    @staticmethod
    def _conditions(criteria: AuditFilter) -> list:
        c = audit_events.c
        conditions = []
        if criteria.actor_principal_id is not None:
            conditions.append(c.actor_principal_id == criteria.actor_principal_id)
        if criteria.actor_identifier:
            conditions.append(c.actor_identifier == criteria.actor_identifier.strip().lower())
        if criteria.action is not None:
            conditions.append(c.action == AuditAction(criteria.action).value)
        if criteria.entity_type:
            conditions.append(c.entity_type == criteria.entity_type)
        if criteria.entity_id:
            conditions.append(c.entity_id == criteria.entity_id)
        if criteria.success is not None:
            conditions.append(c.success == criteria.success)
        if criteria.since is not None:
            conditions.append(c.timestamp >= to_iso(criteria.since))
        if criteria.until is not None:
            conditions.append(c.timestamp < to_iso(criteria.until))
        return conditions


def _row_to_event(row: Row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        timestamp=from_iso(row.timestamp),
        actor_principal_id=row.actor_principal_id,
        actor_identifier=row.actor_identifier,
        role=row.role,
        action=AuditAction(row.action),
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        metadata=json.loads(row.metadata) if row.metadata else {},
        success=bool(row.success),
        error_message=row.error_message,
        ip=row.ip,
        user_agent=row.user_agent,
    )
