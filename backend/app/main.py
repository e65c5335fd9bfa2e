import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app.api.config import DEFAULT_CORS_ORIGINS, log_level
from backend.app.api.routes.audit import router as audit_router
from backend.app.api.routes.cash_movements import router as cash_movements_router
from backend.app.api.routes.cash_sessions import router as cash_sessions_router
from backend.app.api.routes.system import router as system_router


logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw is None:
        origins = list(DEFAULT_CORS_ORIGINS)
    else:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not be empty.")
    if not any(origin in origins for origin in DEFAULT_CORS_ORIGINS):
        logger.warning("CORS allowlist does not include local dev origins: %s", origins)
    return origins


app = FastAPI(title="Cash Ledger API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system_router)
app.include_router(cash_movements_router)
app.include_router(cash_sessions_router)
app.include_router(audit_router)
