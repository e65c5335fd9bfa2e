from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from backend.app.models import CashCount, CashDiscrepancy, CashMovement, CashSession, utcnow
from backend.app.services import audit_service, cash_errors
from backend.app.services.cash_movement_service import get_session
from backend.app.services.cash_rules import SessionStatus, as_utc, resolve_range

logger = logging.getLogger(__name__)

DISCREPANCY_TYPES = ("SHORTAGE", "OVERAGE")


@dataclass(frozen=True)
class CountLine:
    denomination: float
    quantity: int


def _require_non_negative(value: Optional[float], field: str) -> None:
    if value is None:
        return
    if not math.isfinite(value) or value < 0:
        raise cash_errors.InvalidSessionPayload(f"{field} must be a finite number >= 0")


def _validate_counts(counts: Sequence[CountLine]) -> None:
    for line in counts:
        _require_non_negative(line.denomination, "denomination")
        if line.quantity < 0:
            raise cash_errors.InvalidSessionPayload("quantity must be an integer >= 0")


def _utc_or_none(value):
    return as_utc(value) if value is not None else None


def format_count(row: CashCount) -> Dict[str, Any]:
    return {
        "id": row.id,
        "denomination": row.denomination,
        "quantity": row.quantity,
        "total": row.total,
    }


def format_session(
    row: CashSession,
    *,
    counts: Optional[List[CashCount]] = None,
    movements: Optional[List[CashMovement]] = None,
) -> Dict[str, Any]:
    out = {
        "id": row.id,
        "status": row.status,
        "openingAmount": row.opening_amount,
        "closingAmount": row.closing_amount,
        "systemExpected": row.system_expected,
        "discrepancyAmount": row.discrepancy_amount,
        "notes": row.notes,
        "openedAt": _utc_or_none(row.opened_at),
        "openedBy": row.opened_by,
        "closedAt": _utc_or_none(row.closed_at),
        "closedBy": row.closed_by,
    }
    if counts is not None:
        out["counts"] = [format_count(c) for c in counts]
    if movements is not None:
        out["movements"] = [
            {"id": m.id, "type": m.type, "amount": m.amount, "reason": m.reason}
            for m in movements
        ]
    return out


def _find_open_session(db: Session, organization_id: str) -> Optional[CashSession]:
    return (
        db.execute(
            select(CashSession)
            .where(
                CashSession.organization_id == organization_id,
                CashSession.status == SessionStatus.OPEN.value,
            )
            .order_by(CashSession.opened_at.desc())
        )
        .scalars()
        .first()
    )


def current_session(db: Session, organization_id: str) -> Optional[Dict[str, Any]]:
    row = _find_open_session(db, organization_id)
    return format_session(row) if row else None


def open_session(
    db: Session,
    *,
    organization_id: str,
    user_id: str,
    opening_amount: float,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    _require_non_negative(opening_amount, "openingAmount")
    if _find_open_session(db, organization_id) is not None:
        raise cash_errors.SessionAlreadyOpen()

    row = CashSession(
        organization_id=organization_id,
        status=SessionStatus.OPEN.value,
        opening_amount=opening_amount,
        notes=notes,
        opened_by=user_id,
        opened_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError as exc:
        # Lost the race to a concurrent open in the same tenant.
        logger.info("concurrent cash session open rejected org=%s", organization_id)
        raise cash_errors.SessionAlreadyOpen() from exc

    audit_service.log_audit_event(
        db,
        organization_id=organization_id,
        event_type="cash_session.opened",
        actor=user_id,
        entity_type="cash_session",
        entity_id=row.id,
        after={"opening_amount": opening_amount},
    )
    db.commit()
    db.refresh(row)
    logger.info("cash session opened id=%s org=%s", row.id, organization_id)
    return format_session(row)


def _insert_counts(db: Session, session: CashSession, counts: Sequence[CountLine]) -> None:
    for line in counts:
        db.add(
            CashCount(
                organization_id=session.organization_id,
                session_id=session.id,
                denomination=line.denomination,
                quantity=line.quantity,
                total=round(line.denomination * line.quantity, 2),
            )
        )


def close_session(
    db: Session,
    *,
    organization_id: str,
    user_id: str,
    closing_amount: float,
    system_expected: Optional[float] = None,
    notes: Optional[str] = None,
    counts: Sequence[CountLine] = (),
) -> Dict[str, Any]:
    _require_non_negative(closing_amount, "closingAmount")
    _require_non_negative(system_expected, "systemExpected")
    _validate_counts(counts)

    row = _find_open_session(db, organization_id)
    if row is None:
        raise cash_errors.NoOpenSession()

    _insert_counts(db, row, counts)

    row.closing_amount = closing_amount
    row.system_expected = system_expected
    row.discrepancy_amount = (
        round(closing_amount - system_expected, 2) if system_expected is not None else None
    )
    if notes is not None:
        row.notes = notes
    row.closed_by = user_id
    row.closed_at = utcnow()
    row.status = SessionStatus.CLOSED.value
    db.flush()

    audit_service.log_audit_event(
        db,
        organization_id=organization_id,
        event_type="cash_session.closed",
        actor=user_id,
        entity_type="cash_session",
        entity_id=row.id,
        before={"status": SessionStatus.OPEN.value},
        after={
            "status": SessionStatus.CLOSED.value,
            "closing_amount": closing_amount,
            "system_expected": system_expected,
            "discrepancy_amount": row.discrepancy_amount,
        },
    )
    db.commit()
    db.refresh(row)
    logger.info("cash session closed id=%s org=%s discrepancy=%s", row.id, organization_id, row.discrepancy_amount)
    return format_session(row)


def list_sessions(
    db: Session,
    organization_id: str,
    *,
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    raw_from: Optional[str] = None,
    raw_to: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    opened_from, opened_to = resolve_range(raw_from, raw_to)

    conditions = [CashSession.organization_id == organization_id]
    if status and status != "all":
        conditions.append(CashSession.status == status.upper())
    if opened_from is not None:
        conditions.append(CashSession.opened_at >= opened_from)
    if opened_to is not None:
        conditions.append(CashSession.opened_at <= opened_to)
    if user_id and user_id != "all":
        conditions.append(or_(CashSession.opened_by == user_id, CashSession.closed_by == user_id))

    total = db.execute(select(func.count(CashSession.id)).where(*conditions)).scalar_one()
    rows = (
        db.execute(
            select(CashSession)
            .where(*conditions)
            .options(selectinload(CashSession.movements), selectinload(CashSession.counts))
            .order_by(CashSession.opened_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )

    sessions = [
        format_session(
            row,
            counts=list(row.counts),
            movements=sorted(row.movements, key=lambda m: as_utc(m.created_at), reverse=True),
        )
        for row in rows
    ]
    return {
        "sessions": sessions,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        },
    }


def replace_counts(
    db: Session,
    *,
    organization_id: str,
    user_id: str,
    session_id: str,
    counts: Sequence[CountLine],
) -> Dict[str, Any]:
    _validate_counts(counts)
    row = get_session(db, organization_id, session_id)
    if row is None:
        raise cash_errors.SessionNotFound()

    db.execute(
        delete(CashCount).where(
            CashCount.session_id == session_id,
            CashCount.organization_id == organization_id,
        )
    )
    _insert_counts(db, row, counts)
    db.flush()

    audit_service.log_audit_event(
        db,
        organization_id=organization_id,
        event_type="cash_session.counts_saved",
        actor=user_id,
        entity_type="cash_session",
        entity_id=session_id,
        after={"lines": len(counts), "total": round(sum(c.denomination * c.quantity for c in counts), 2)},
    )
    db.commit()

    saved = (
        db.execute(select(CashCount).where(CashCount.session_id == session_id))
        .scalars()
        .all()
    )
    return format_session(row, counts=list(saved))


def record_discrepancy(
    db: Session,
    *,
    organization_id: str,
    user_id: str,
    session_id: str,
    discrepancy_type: str,
    amount: float,
    explanation: Optional[str] = None,
) -> Dict[str, Any]:
    if discrepancy_type not in DISCREPANCY_TYPES:
        raise cash_errors.InvalidSessionPayload("type must be SHORTAGE or OVERAGE")
    _require_non_negative(amount, "amount")
    if get_session(db, organization_id, session_id) is None:
        raise cash_errors.SessionNotFound()

    row = CashDiscrepancy(
        organization_id=organization_id,
        session_id=session_id,
        type=discrepancy_type,
        amount=amount,
        explanation=explanation,
        reported_by=user_id,
    )
    db.add(row)
    db.flush()
    audit_service.log_audit_event(
        db,
        organization_id=organization_id,
        event_type="cash_discrepancy.recorded",
        actor=user_id,
        reason=explanation[:200] if explanation else None,
        entity_type="cash_discrepancy",
        entity_id=row.id,
        after={"session_id": session_id, "type": discrepancy_type, "amount": amount},
    )
    db.commit()
    db.refresh(row)
    return {
        "id": row.id,
        "sessionId": row.session_id,
        "type": row.type,
        "amount": row.amount,
        "explanation": row.explanation,
        "reportedBy": row.reported_by,
        "createdAt": as_utc(row.created_at),
    }
