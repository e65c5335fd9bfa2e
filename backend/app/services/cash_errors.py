"""
Error kinds for the cash register.

Each kind is an HTTPException so services can raise them directly and FastAPI
renders them as ``{"detail": {"kind": ..., "message": ...}}``.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import HTTPException


class CashError(HTTPException):
    kind = "CashError"
    status = 400
    default_message = "cash register error"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Any] = None):
        self.message = message or self.default_message
        self.details = details
        body = {"kind": self.kind, "message": self.message}
        if details is not None:
            body["details"] = details
        super().__init__(status_code=self.status, detail=body)


class MissingOrganization(CashError):
    kind = "MissingOrganization"
    default_message = "Organization header missing"


class Unauthenticated(CashError):
    kind = "Unauthenticated"
    status = 401
    default_message = "Authentication required"


class ValidationError(CashError):
    kind = "ValidationError"
    default_message = "invalid request"


class InvalidAmount(ValidationError):
    kind = "InvalidAmount"
    default_message = "Invalid amount: must be a finite number"


class AmountTooLarge(ValidationError):
    kind = "AmountTooLarge"
    default_message = "Amount too large: maximum is 10,000,000"


class ZeroAmountNotAllowed(ValidationError):
    kind = "ZeroAmountNotAllowed"
    default_message = "Amount cannot be zero for this movement type"


class ReturnMustBeNegative(ValidationError):
    kind = "ReturnMustBeNegative"
    default_message = "Return amount must be negative"


class AmountMustBePositive(ValidationError):
    kind = "AmountMustBePositive"
    default_message = "Amount must be positive for this movement type"


class InvalidMovementType(ValidationError):
    kind = "InvalidMovementType"
    default_message = "Invalid movement type: must be one of IN, OUT, SALE, RETURN, ADJUSTMENT"


class MissingRequiredField(ValidationError):
    kind = "MissingRequiredField"
    default_message = "Missing required fields: sessionId and type are required"


class InvalidDate(ValidationError):
    kind = "InvalidDate"
    default_message = "Invalid date: expected YYYY-MM-DD or an ISO timestamp"


class InvalidCursor(ValidationError):
    kind = "InvalidCursor"
    default_message = "Invalid audit cursor"


class InvalidSessionPayload(ValidationError):
    kind = "InvalidSessionPayload"
    default_message = "Invalid cash session payload"


class SessionNotFound(CashError):
    kind = "SessionNotFound"
    status = 404
    default_message = "Session not found"


class SessionNotOpen(CashError):
    kind = "SessionNotOpen"
    default_message = "Session is not open"


class SessionAlreadyOpen(CashError):
    kind = "SessionAlreadyOpen"
    default_message = "An open cash session already exists for this organization"


class NoOpenSession(CashError):
    kind = "NoOpenSession"
    default_message = "No open cash session for this organization"


class AuthorizationDenied(CashError):
    kind = "AuthorizationDenied"
    status = 403
    default_message = "Permission denied"


class StorageFailure(CashError):
    kind = "StorageFailure"
    status = 500
    default_message = "Failed to persist cash data"
