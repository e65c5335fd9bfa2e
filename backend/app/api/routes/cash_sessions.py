from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import CashContext, cash_context_dep
from backend.app.db import get_db
from backend.app.services import cash_session_service
from backend.app.services.cash_session_service import CountLine

router = APIRouter(prefix="/api/cash", tags=["cash"])


class CashCountIn(BaseModel):
    denomination: float
    quantity: int


class CashCountOut(BaseModel):
    id: str
    denomination: float
    quantity: int
    total: float


class SessionMovementOut(BaseModel):
    id: str
    type: str
    amount: float
    reason: Optional[str] = None


class CashSessionOut(BaseModel):
    id: str
    status: str
    openingAmount: float
    closingAmount: Optional[float] = None
    systemExpected: Optional[float] = None
    discrepancyAmount: Optional[float] = None
    notes: Optional[str] = None
    openedAt: datetime
    openedBy: str
    closedAt: Optional[datetime] = None
    closedBy: Optional[str] = None


class CashSessionCountsOut(CashSessionOut):
    counts: List[CashCountOut]


class CashSessionSummaryOut(CashSessionCountsOut):
    movements: List[SessionMovementOut]


class CashSessionEnvelope(BaseModel):
    session: Optional[CashSessionOut] = None


class CashSessionCountsEnvelope(BaseModel):
    session: CashSessionCountsOut


class PaginationOut(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class CashSessionPageOut(BaseModel):
    sessions: List[CashSessionSummaryOut]
    pagination: PaginationOut


class OpenSessionIn(BaseModel):
    openingAmount: float
    notes: Optional[str] = None


class CloseSessionIn(BaseModel):
    closingAmount: float
    systemExpected: Optional[float] = None
    notes: Optional[str] = None
    counts: Optional[List[CashCountIn]] = None


class SaveCountsIn(BaseModel):
    counts: List[CashCountIn] = []


class DiscrepancyIn(BaseModel):
    sessionId: str
    type: str
    amount: float
    explanation: Optional[str] = None


class DiscrepancyOut(BaseModel):
    id: str
    sessionId: str
    type: str
    amount: float
    explanation: Optional[str] = None
    reportedBy: str
    createdAt: datetime


class DiscrepancyEnvelope(BaseModel):
    discrepancy: DiscrepancyOut


def _count_lines(counts: Optional[List[CashCountIn]]) -> List[CountLine]:
    return [CountLine(denomination=c.denomination, quantity=c.quantity) for c in counts or []]


@router.get("/session/current", response_model=CashSessionEnvelope)
def get_current_session(
    ctx: CashContext = Depends(cash_context_dep("read")),
    db: Session = Depends(get_db),
):
    return {"session": cash_session_service.current_session(db, ctx.organization_id)}


@router.post("/session/open", response_model=CashSessionEnvelope, status_code=201)
def open_session(
    req: OpenSessionIn,
    ctx: CashContext = Depends(cash_context_dep("open")),
    db: Session = Depends(get_db),
):
    session = cash_session_service.open_session(
        db,
        organization_id=ctx.organization_id,
        user_id=ctx.user_id,
        opening_amount=req.openingAmount,
        notes=req.notes,
    )
    return {"session": session}


@router.post("/session/close", response_model=CashSessionEnvelope)
def close_session(
    req: CloseSessionIn,
    ctx: CashContext = Depends(cash_context_dep("close")),
    db: Session = Depends(get_db),
):
    session = cash_session_service.close_session(
        db,
        organization_id=ctx.organization_id,
        user_id=ctx.user_id,
        closing_amount=req.closingAmount,
        system_expected=req.systemExpected,
        notes=req.notes,
        counts=_count_lines(req.counts),
    )
    return {"session": session}


@router.get("/sessions", response_model=CashSessionPageOut)
def list_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    status: Optional[str] = Query(None),
    raw_from: Optional[str] = Query(None, alias="from"),
    raw_to: Optional[str] = Query(None, alias="to"),
    user_id: Optional[str] = Query(None, alias="userId"),
    ctx: CashContext = Depends(cash_context_dep("read")),
    db: Session = Depends(get_db),
):
    return cash_session_service.list_sessions(
        db,
        ctx.organization_id,
        page=page,
        limit=limit,
        status=status,
        raw_from=raw_from,
        raw_to=raw_to,
        user_id=user_id,
    )


@router.post("/sessions/{session_id}/counts", response_model=CashSessionCountsEnvelope)
def save_counts(
    session_id: str,
    req: SaveCountsIn,
    ctx: CashContext = Depends(cash_context_dep("close")),
    db: Session = Depends(get_db),
):
    session = cash_session_service.replace_counts(
        db,
        organization_id=ctx.organization_id,
        user_id=ctx.user_id,
        session_id=session_id,
        counts=_count_lines(req.counts),
    )
    return {"session": session}


@router.post("/discrepancies", response_model=DiscrepancyEnvelope, status_code=201)
def record_discrepancy(
    req: DiscrepancyIn,
    ctx: CashContext = Depends(cash_context_dep("reconcile")),
    db: Session = Depends(get_db),
):
    discrepancy = cash_session_service.record_discrepancy(
        db,
        organization_id=ctx.organization_id,
        user_id=ctx.user_id,
        session_id=req.sessionId,
        discrepancy_type=req.type,
        amount=req.amount,
        explanation=req.explanation,
    )
    return {"discrepancy": discrepancy}
