from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import CashContext, cash_context_dep
from backend.app.db import get_db
from backend.app.services import audit_service

router = APIRouter(prefix="/api/audit", tags=["audit"])


class AuditEntryOut(BaseModel):
    id: str
    organization_id: str
    event_type: str
    actor: str
    reason: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    created_at: datetime


class AuditPageOut(BaseModel):
    items: List[AuditEntryOut]
    next_cursor: Optional[str] = None


@router.get("", response_model=AuditPageOut)
def list_cash_audit(
    limit: int = Query(100, ge=1, le=500),
    cursor: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None, description="e.g. cash_movement.created"),
    actor: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None, description="cash_movement, cash_session, cash_discrepancy"),
    entity_id: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    ctx: CashContext = Depends(cash_context_dep("audit")),
    db: Session = Depends(get_db),
):
    q = audit_service.AuditQuery(
        organization_id=ctx.organization_id,
        event_type=event_type,
        actor=actor,
        entity_type=entity_type,
        entity_id=entity_id,
        since=since,
        until=until,
    )
    return audit_service.list_audit_events(db, q, limit=limit, cursor=cursor)
