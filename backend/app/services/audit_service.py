from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from backend.app.models import AuditLog
from backend.app.services import cash_errors
from backend.app.services.cash_rules import as_utc

logger = logging.getLogger(__name__)

_CURSOR_SEP = "|"


@dataclass(frozen=True)
class AuditQuery:
    organization_id: str
    event_type: Optional[str] = None
    actor: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None


def log_audit_event(
    db: Session,
    *,
    organization_id: str,
    event_type: str,
    actor: str,
    reason: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    entry = AuditLog(
        organization_id=organization_id,
        event_type=event_type,
        actor=actor,
        reason=reason,
        entity_type=entity_type,
        entity_id=entity_id,
        before_state=before,
        after_state=after,
    )
    db.add(entry)
    db.flush()
    logger.debug("audit %s %s:%s by %s", event_type, entity_type, entity_id, actor)
    return entry


def encode_cursor(entry: AuditLog) -> str:
    return _CURSOR_SEP.join((as_utc(entry.created_at).isoformat(), entry.id))


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    stamp, sep, entry_id = cursor.partition(_CURSOR_SEP)
    if not sep or not entry_id:
        raise cash_errors.InvalidCursor()
    try:
        return as_utc(datetime.fromisoformat(stamp)), entry_id
    except ValueError as exc:
        raise cash_errors.InvalidCursor() from exc


def _conditions(q: AuditQuery) -> List[Any]:
    conditions: List[Any] = [AuditLog.organization_id == q.organization_id]
    for column, value in (
        (AuditLog.event_type, q.event_type),
        (AuditLog.actor, q.actor),
        (AuditLog.entity_type, q.entity_type),
        (AuditLog.entity_id, q.entity_id),
    ):
        if value:
            conditions.append(column == value)
    if q.since is not None:
        conditions.append(AuditLog.created_at >= as_utc(q.since))
    if q.until is not None:
        conditions.append(AuditLog.created_at <= as_utc(q.until))
    return conditions


def format_audit_entry(entry: AuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "organization_id": entry.organization_id,
        "event_type": entry.event_type,
        "actor": entry.actor,
        "reason": entry.reason,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "created_at": as_utc(entry.created_at),
    }


def list_audit_events(
    db: Session,
    q: AuditQuery,
    *,
    limit: int = 100,
    cursor: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Newest-first page of one tenant's audit trail. The cursor is the
    (created_at, id) of the last entry on the previous page.
    """
    conditions = _conditions(q)
    if cursor:
        after_ts, after_id = decode_cursor(cursor)
        conditions.append(
            or_(
                AuditLog.created_at < after_ts,
                and_(AuditLog.created_at == after_ts, AuditLog.id < after_id),
            )
        )

    entries = list(
        db.execute(
            select(AuditLog)
            .where(*conditions)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit + 1)
        )
        .scalars()
        .all()
    )

    has_more = len(entries) > limit
    entries = entries[:limit]
    return {
        "items": [format_audit_entry(e) for e in entries],
        "next_cursor": encode_cursor(entries[-1]) if has_more else None,
    }
