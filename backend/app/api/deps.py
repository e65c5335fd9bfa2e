# backend/app/api/deps.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.config import auto_provision_users
from backend.app.db import get_db
from backend.app.models import OrganizationMembership, User, utcnow
from backend.app.services import cash_errors

logger = logging.getLogger(__name__)

ROLE_ORDER = {
    "viewer": 1,
    "cashier": 2,
    "manager": 3,
    "owner": 4,
}

# Minimum membership role per cash permission.
PERMISSION_ROLES = {
    "read": "viewer",
    "move": "cashier",
    "open": "cashier",
    "close": "cashier",
    "reconcile": "manager",
    "audit": "manager",
}


@dataclass(frozen=True)
class CashContext:
    """Request-scoped tenant + caller, passed explicitly into cash services."""

    organization_id: str
    user: User
    role: str

    @property
    def user_id(self) -> str:
        return self.user.id


def get_organization_id(request: Request) -> str:
    org_id = (request.headers.get("X-Organization-Id") or "").strip()
    if not org_id:
        raise cash_errors.MissingOrganization()
    return org_id


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
) -> User:
    """
    Header auth dependency.

    Reads identity from headers:
      - X-User-Email (preferred; provisioned on first sight unless
        AUTH_AUTO_PROVISION=0)
      - X-User-Id    (fallback; must already exist)
    """
    email = request.headers.get("X-User-Email")
    user_id = request.headers.get("X-User-Id")
    if not email and not user_id:
        raise cash_errors.Unauthenticated("Missing X-User-Email or X-User-Id header")

    if email:
        normalized = email.strip().lower()
        if not normalized:
            raise cash_errors.Unauthenticated("Invalid X-User-Email header")

        user = db.execute(select(User).where(User.email == normalized)).scalars().first()
        if user:
            return user
        if not auto_provision_users():
            raise cash_errors.Unauthenticated("Unknown X-User-Email")
        user = User(
            email=normalized,
            full_name=normalized.split("@")[0],
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    user = db.get(User, user_id)
    if not user:
        raise cash_errors.Unauthenticated("Unknown X-User-Id")
    return user


def require_org_membership(
    db: Session,
    organization_id: str,
    user: User,
    *,
    min_role: str = "viewer",
) -> OrganizationMembership:
    membership = (
        db.execute(
            select(OrganizationMembership).where(
                OrganizationMembership.organization_id == organization_id,
                OrganizationMembership.user_id == user.id,
            )
        )
        .scalars()
        .first()
    )
    if not membership:
        logger.warning("cash access denied: user=%s org=%s has no membership", user.id, organization_id)
        raise cash_errors.AuthorizationDenied("membership required")

    min_rank = ROLE_ORDER.get(min_role, 0)
    member_rank = ROLE_ORDER.get(membership.role or "", 0)
    if member_rank < min_rank:
        logger.warning(
            "cash access denied: user=%s org=%s role=%s needs=%s",
            user.id,
            organization_id,
            membership.role,
            min_role,
        )
        raise cash_errors.AuthorizationDenied("insufficient role")
    return membership


def cash_context_dep(permission: str = "read") -> Callable[..., CashContext]:
    """
    FastAPI dependency factory resolving tenant, caller and permission, in
    that order.

    Usage:
      @router.post("/movements")
      def create(ctx: CashContext = Depends(cash_context_dep("move")), ...):
          ...
    """
    min_role = PERMISSION_ROLES[permission]

    def _dep(
        request: Request,
        db: Session = Depends(get_db),
    ) -> CashContext:
        organization_id = get_organization_id(request)
        user = get_current_user(request, db)
        membership = require_org_membership(db, organization_id, user, min_role=min_role)
        return CashContext(organization_id=organization_id, user=user, role=membership.role)

    return _dep
