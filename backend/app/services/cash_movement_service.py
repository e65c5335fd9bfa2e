from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import Select, select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.models import CashMovement, CashSession, Profile, User
from backend.app.services import audit_service, cash_errors
from backend.app.services.cash_rules import (
    MovementType,
    SessionStatus,
    as_utc,
    clamp_to_closed_at,
    parse_movement_type,
    resolve_range,
    sanitize_reason,
    validate_movement_amount,
)

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "Movement already exists"

_POLICY_SQLSTATE = "42501"
_POLICY_MARKERS = ("permission denied", "row-level security", "rls", "policy")

EXPORT_HEADER = ["Date", "Type", "Amount", "Reason", "User", "Reference"]

EXPORT_SORT_COLUMNS = {
    "date": CashMovement.created_at,
    "amount": CashMovement.amount,
    "type": CashMovement.type,
}


@dataclass(frozen=True)
class MovementFilter:
    """ANDed constraints over one tenant's movements; None means unconstrained."""

    organization_id: str
    session_id: Optional[str] = None
    movement_type: Optional[MovementType] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    created_by: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    amount_min: Optional[float] = None
    amount_max: Optional[float] = None
    search: Optional[str] = None


@dataclass(frozen=True)
class CreateMovementResult:
    movement: Optional[Dict[str, Any]]
    duplicate: bool = False


# -------------------------
# Session lookups
# -------------------------

def get_session(db: Session, organization_id: str, session_id: str) -> Optional[CashSession]:
    return (
        db.execute(
            select(CashSession).where(
                CashSession.id == session_id,
                CashSession.organization_id == organization_id,
            )
        )
        .scalars()
        .first()
    )


def require_open_session(db: Session, organization_id: str, session_id: str) -> CashSession:
    session = get_session(db, organization_id, session_id)
    if session is None:
        raise cash_errors.SessionNotFound()
    if (session.status or "").upper() != SessionStatus.OPEN.value:
        raise cash_errors.SessionNotOpen()
    return session


# -------------------------
# Filtering
# -------------------------

def _resolve_creator(user_id: str, created_by_me: bool, creator_id: Optional[str]) -> Optional[str]:
    if created_by_me:
        return user_id
    if creator_id and creator_id != "all":
        return creator_id
    return None


def build_movement_filter(
    db: Session,
    organization_id: str,
    *,
    user_id: str,
    session_id: Optional[str] = None,
    movement_type: Optional[str] = None,
    raw_from: Optional[str] = None,
    raw_to: Optional[str] = None,
    search: Optional[str] = None,
    amount_min: Optional[float] = None,
    amount_max: Optional[float] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    created_by_me: bool = False,
    creator_id: Optional[str] = None,
) -> MovementFilter:
    """
    `created_by_me` pins the creator to the caller and wins over `creator_id`;
    a `creator_id` of "all" means any creator.
    """
    created_from, created_to = resolve_range(raw_from, raw_to)

    if session_id and created_to is not None:
        session = get_session(db, organization_id, session_id)
        if session is not None and session.closed_at is not None:
            clamped = clamp_to_closed_at(created_to, session.closed_at)
            if clamped != created_to:
                logger.debug(
                    "clamped movement range for closed session=%s from %s to %s",
                    session_id,
                    created_to.isoformat(),
                    clamped.isoformat(),
                )
            created_to = clamped

    return MovementFilter(
        organization_id=organization_id,
        session_id=session_id or None,
        movement_type=parse_movement_type(movement_type) if movement_type else None,
        reference_type=reference_type or None,
        reference_id=reference_id or None,
        created_by=_resolve_creator(user_id, created_by_me, creator_id),
        created_from=created_from,
        created_to=created_to,
        amount_min=amount_min,
        amount_max=amount_max,
        search=search if search and search.strip() else None,
    )


def apply_movement_filter(stmt: Select, flt: MovementFilter) -> Select:
    stmt = stmt.where(CashMovement.organization_id == flt.organization_id)
    if flt.session_id:
        stmt = stmt.where(CashMovement.session_id == flt.session_id)
    if flt.movement_type is not None:
        stmt = stmt.where(CashMovement.type == flt.movement_type.value)
    if flt.reference_type:
        stmt = stmt.where(CashMovement.reference_type == flt.reference_type)
    if flt.reference_id:
        stmt = stmt.where(CashMovement.reference_id == flt.reference_id)
    if flt.created_by:
        stmt = stmt.where(CashMovement.created_by == flt.created_by)
    if flt.created_from is not None:
        stmt = stmt.where(CashMovement.created_at >= flt.created_from)
    if flt.created_to is not None:
        stmt = stmt.where(CashMovement.created_at <= flt.created_to)
    if flt.amount_min is not None:
        stmt = stmt.where(CashMovement.amount >= flt.amount_min)
    if flt.amount_max is not None:
        stmt = stmt.where(CashMovement.amount <= flt.amount_max)
    if flt.search:
        stmt = stmt.where(CashMovement.reason.icontains(flt.search, autoescape=True))
    return stmt


def query_movements(
    db: Session,
    flt: MovementFilter,
    limit: Optional[int] = None,
    *,
    order_by: str = "date",
    order_dir: str = "desc",
) -> List[CashMovement]:
    column = EXPORT_SORT_COLUMNS[order_by]
    primary = column.asc() if order_dir == "asc" else column.desc()
    stmt = apply_movement_filter(select(CashMovement), flt).order_by(
        primary,
        CashMovement.created_at.desc(),
        CashMovement.id.desc(),
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    try:
        return list(db.execute(stmt).scalars().all())
    except SQLAlchemyError as exc:
        raise classify_storage_error(exc, "Failed to fetch movements") from exc


# -------------------------
# Formatting
# -------------------------

def _user_summary(user_id: str, full_name: Optional[str], email: Optional[str]) -> Dict[str, Any]:
    return {"id": user_id, "fullName": full_name, "email": email}


def lookup_user_summaries(db: Session, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """
    Profiles first; ids without a profile row fall back to the users table.
    """
    wanted = {uid for uid in user_ids if uid}
    if not wanted:
        return {}

    summaries: Dict[str, Dict[str, Any]] = {}
    for profile in db.execute(select(Profile).where(Profile.id.in_(wanted))).scalars():
        summaries[profile.id] = _user_summary(profile.id, profile.full_name, profile.email)

    missing = wanted - summaries.keys()
    if missing:
        for user in db.execute(select(User).where(User.id.in_(missing))).scalars():
            summaries[user.id] = _user_summary(user.id, user.full_name, user.email)
    return summaries


def format_movement(row: CashMovement, created_by_user: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "id": row.id,
        "sessionId": row.session_id,
        "type": row.type,
        "amount": row.amount,
        "reason": row.reason,
        "referenceType": row.reference_type,
        "referenceId": row.reference_id,
        "createdAt": as_utc(row.created_at),
        "createdByUser": created_by_user,
    }


# -------------------------
# Read path
# -------------------------

def list_movements(
    db: Session,
    flt: MovementFilter,
    *,
    include_user: bool = False,
    limit: Optional[int] = None,
    order_by: str = "date",
    order_dir: str = "desc",
) -> List[Dict[str, Any]]:
    rows = query_movements(db, flt, limit=limit, order_by=order_by, order_dir=order_dir)

    summaries: Dict[str, Dict[str, Any]] = {}
    if include_user and rows:
        try:
            summaries = lookup_user_summaries(db, (row.created_by for row in rows))
        except SQLAlchemyError:
            logger.warning("user enrichment failed for %d movements; returning without users", len(rows), exc_info=True)
            summaries = {}

    return [format_movement(row, summaries.get(row.created_by)) for row in rows]


def export_movements_csv(
    db: Session,
    flt: MovementFilter,
    *,
    max_rows: int,
    order_by: str = "date",
    order_dir: str = "desc",
) -> str:
    movements = list_movements(
        db, flt, include_user=True, limit=max_rows, order_by=order_by, order_dir=order_dir
    )

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    for item in movements:
        user = item["createdByUser"] or {}
        reference = f"{item['referenceType']}: {item['referenceId']}" if item["referenceType"] else "-"
        writer.writerow(
            [
                item["createdAt"].isoformat(),
                item["type"],
                str(item["amount"]),
                item["reason"] or "-",
                user.get("fullName") or user.get("email") or "-",
                reference,
            ]
        )
    return "\ufeff" + buffer.getvalue()


# -------------------------
# Write path
# -------------------------

def classify_storage_error(exc: SQLAlchemyError, fallback: str) -> cash_errors.CashError:
    orig = getattr(exc, "orig", None)
    message = str(orig if orig is not None else exc) or fallback
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    lower = message.lower()
    if code == _POLICY_SQLSTATE or any(marker in lower for marker in _POLICY_MARKERS):
        logger.warning("storage policy rejected cash write: %s", message)
        return cash_errors.AuthorizationDenied("Permission denied by storage policy", details={"message": message, "code": code})
    logger.error("cash storage failure: %s", message, exc_info=exc)
    return cash_errors.StorageFailure(fallback, details={"message": message, "code": code})


def _clean_reference(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def find_existing_reference(
    db: Session,
    session_id: str,
    reference_type: str,
    reference_id: str,
) -> Optional[str]:
    return (
        db.execute(
            select(CashMovement.id)
            .where(
                CashMovement.session_id == session_id,
                CashMovement.reference_type == reference_type,
                CashMovement.reference_id == reference_id,
            )
            .limit(1)
        )
        .scalars()
        .first()
    )


def create_movement(
    db: Session,
    *,
    organization_id: str,
    user_id: str,
    payload: Mapping[str, Any],
) -> CreateMovementResult:
    """
    Validates and books one movement. A movement whose reference pair is
    already recorded in the session is reported as a duplicate instead of
    being inserted again; the unique constraint backs the pre-check.
    """
    session_id = payload.get("sessionId")
    raw_type = payload.get("type")
    if not session_id or not raw_type or not isinstance(session_id, str):
        raise cash_errors.MissingRequiredField()

    require_open_session(db, organization_id, session_id)

    movement_type = parse_movement_type(raw_type)
    amount = validate_movement_amount(movement_type, payload.get("amount"))

    reference_type = _clean_reference(payload.get("referenceType"))
    reference_id = _clean_reference(payload.get("referenceId"))

    if reference_type and reference_id:
        if find_existing_reference(db, session_id, reference_type, reference_id):
            logger.info(
                "duplicate cash movement ignored session=%s reference=%s:%s",
                session_id,
                reference_type,
                reference_id,
            )
            return CreateMovementResult(movement=None, duplicate=True)

    row = CashMovement(
        organization_id=organization_id,
        session_id=session_id,
        type=movement_type.value,
        amount=amount,
        reason=sanitize_reason(payload.get("reason")),
        reference_type=reference_type,
        reference_id=reference_id,
        created_by=user_id,
    )

    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError as exc:
        if reference_type and reference_id and find_existing_reference(db, session_id, reference_type, reference_id):
            logger.info(
                "concurrent duplicate cash movement session=%s reference=%s:%s",
                session_id,
                reference_type,
                reference_id,
            )
            return CreateMovementResult(movement=None, duplicate=True)
        db.rollback()
        raise classify_storage_error(exc, "Failed to create movement") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise classify_storage_error(exc, "Failed to create movement") from exc

    audit_service.log_audit_event(
        db,
        organization_id=organization_id,
        event_type="cash_movement.created",
        actor=user_id,
        reason=row.reason,
        entity_type="cash_movement",
        entity_id=row.id,
        after={
            "session_id": session_id,
            "type": row.type,
            "amount": row.amount,
            "reference_type": reference_type,
            "reference_id": reference_id,
        },
    )

    try:
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise classify_storage_error(exc, "Failed to create movement") from exc
    db.refresh(row)

    logger.info(
        "cash movement created id=%s session=%s type=%s amount=%.2f",
        row.id,
        session_id,
        row.type,
        row.amount,
    )

    try:
        creator = lookup_user_summaries(db, [user_id]).get(user_id)
    except SQLAlchemyError:
        logger.warning("creator lookup failed for user=%s", user_id, exc_info=True)
        creator = None
    creator = creator or {"id": user_id}
    return CreateMovementResult(movement=format_movement(row, creator))
