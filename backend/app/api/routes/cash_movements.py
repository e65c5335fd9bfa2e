# backend/app/api/routes/cash_movements.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.config import export_max_rows
from backend.app.api.deps import CashContext, cash_context_dep
from backend.app.db import get_db
from backend.app.services import cash_movement_service
from backend.app.services.cash_rules import is_truthy, parse_optional_number

router = APIRouter(prefix="/api/cash", tags=["cash"])


# -------------------------
# Schemas
# -------------------------

class CreatedByUserOut(BaseModel):
    id: str
    fullName: Optional[str] = None
    email: Optional[str] = None


class CashMovementOut(BaseModel):
    id: str
    sessionId: str
    type: str
    amount: float
    reason: Optional[str] = None
    referenceType: Optional[str] = None
    referenceId: Optional[str] = None
    createdAt: datetime
    createdByUser: Optional[CreatedByUserOut] = None


class CashMovementListOut(BaseModel):
    movements: List[CashMovementOut]


class CashMovementIn(BaseModel):
    # Loosely typed on purpose: the ledger rules report precise error kinds
    # instead of a generic request validation failure.
    sessionId: Optional[Any] = None
    type: Optional[Any] = None
    amount: Optional[Any] = None
    reason: Optional[Any] = None
    referenceType: Optional[Any] = None
    referenceId: Optional[Any] = None


# -------------------------
# Helpers
# -------------------------

def _movement_filter(
    db: Session,
    ctx: CashContext,
    *,
    session_id: Optional[str],
    movement_type: Optional[str],
    raw_from: Optional[str],
    raw_to: Optional[str],
    search: Optional[str],
    amount_min: Optional[str],
    amount_max: Optional[str],
    reference_type: Optional[str],
    reference_id: Optional[str],
    created_by_me: Optional[str],
    creator_id: Optional[str],
) -> cash_movement_service.MovementFilter:
    return cash_movement_service.build_movement_filter(
        db,
        ctx.organization_id,
        user_id=ctx.user_id,
        session_id=session_id,
        movement_type=movement_type,
        raw_from=raw_from,
        raw_to=raw_to,
        search=search,
        amount_min=parse_optional_number(amount_min),
        amount_max=parse_optional_number(amount_max),
        reference_type=reference_type,
        reference_id=reference_id,
        created_by_me=is_truthy(created_by_me),
        creator_id=creator_id,
    )


# -------------------------
# Endpoints
# -------------------------

@router.get("/movements", response_model=CashMovementListOut)
def list_movements(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    include: Optional[str] = Query(None, description="'user' attaches createdByUser"),
    movement_type: Optional[str] = Query(None, alias="type"),
    raw_from: Optional[str] = Query(None, alias="from", description="YYYY-MM-DD or ISO timestamp"),
    raw_to: Optional[str] = Query(None, alias="to", description="YYYY-MM-DD or ISO timestamp"),
    search: Optional[str] = Query(None),
    amount_min: Optional[str] = Query(None, alias="amountMin"),
    amount_max: Optional[str] = Query(None, alias="amountMax"),
    reference_type: Optional[str] = Query(None, alias="referenceType"),
    reference_id: Optional[str] = Query(None, alias="referenceId"),
    created_by_me: Optional[str] = Query(None, alias="createdByMe"),
    creator_id: Optional[str] = Query(None, alias="userId", description="creator id; 'all' means any"),
    ctx: CashContext = Depends(cash_context_dep("read")),
    db: Session = Depends(get_db),
):
    flt = _movement_filter(
        db,
        ctx,
        session_id=session_id,
        movement_type=movement_type,
        raw_from=raw_from,
        raw_to=raw_to,
        search=search,
        amount_min=amount_min,
        amount_max=amount_max,
        reference_type=reference_type,
        reference_id=reference_id,
        created_by_me=created_by_me,
        creator_id=creator_id,
    )
    movements = cash_movement_service.list_movements(db, flt, include_user=include == "user")
    return {"movements": movements}


@router.post("/movements", status_code=201)
def create_movement(
    req: CashMovementIn,
    ctx: CashContext = Depends(cash_context_dep("move")),
    db: Session = Depends(get_db),
):
    result = cash_movement_service.create_movement(
        db,
        organization_id=ctx.organization_id,
        user_id=ctx.user_id,
        payload=req.model_dump(),
    )
    if result.duplicate:
        return JSONResponse(status_code=200, content={"message": cash_movement_service.DUPLICATE_MESSAGE})
    return {"movement": result.movement}


@router.get("/movements/export")
def export_movements(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    movement_type: Optional[str] = Query(None, alias="type"),
    raw_from: Optional[str] = Query(None, alias="from"),
    raw_to: Optional[str] = Query(None, alias="to"),
    search: Optional[str] = Query(None),
    amount_min: Optional[str] = Query(None, alias="amountMin"),
    amount_max: Optional[str] = Query(None, alias="amountMax"),
    reference_type: Optional[str] = Query(None, alias="referenceType"),
    reference_id: Optional[str] = Query(None, alias="referenceId"),
    created_by_me: Optional[str] = Query(None, alias="createdByMe"),
    creator_id: Optional[str] = Query(None, alias="userId", description="creator id; 'all' means any"),
    order_by: Literal["date", "amount", "type"] = Query("date", alias="orderBy"),
    order_dir: Literal["asc", "desc"] = Query("desc", alias="orderDir"),
    ctx: CashContext = Depends(cash_context_dep("read")),
    db: Session = Depends(get_db),
):
    flt = _movement_filter(
        db,
        ctx,
        session_id=session_id,
        movement_type=movement_type,
        raw_from=raw_from,
        raw_to=raw_to,
        search=search,
        amount_min=amount_min,
        amount_max=amount_max,
        reference_type=reference_type,
        reference_id=reference_id,
        created_by_me=created_by_me,
        creator_id=creator_id,
    )
    body = cash_movement_service.export_movements_csv(
        db,
        flt,
        max_rows=export_max_rows(),
        order_by=order_by,
        order_dir=order_dir,
    )
    stamp = datetime.now(timezone.utc).date().isoformat()
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename=movements_{stamp}.csv"},
    )
