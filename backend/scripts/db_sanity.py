from __future__ import annotations

import os
import sys
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError, ProgrammingError

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"

REQUIRED_TABLES = (
    "organization_memberships",
    "cash_sessions",
    "cash_movements",
    "cash_counts",
    "cash_discrepancies",
    "audit_logs",
)
REFERENCE_CONSTRAINT = "uq_cash_movements_session_reference"


def _load_database_url() -> str:
    env_url = os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL")
    if env_url:
        return env_url

    ini_url = Config(str(ALEMBIC_INI)).get_main_option("sqlalchemy.url")
    if not ini_url:
        raise RuntimeError("No DATABASE_URL or sqlalchemy.url configured.")
    return ini_url


def _fetch_db_revision(engine: Engine) -> str | None:
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT version_num FROM alembic_version")).first()
            return row[0] if row else None
    except (OperationalError, ProgrammingError) as exc:
        message = str(exc).lower()
        if "alembic_version" in message or "no such table" in message:
            return None
        raise


def _schema_errors(engine: Engine) -> list[str]:
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    errors = [f"Missing table: {name}" for name in REQUIRED_TABLES if name not in tables]
    if "cash_movements" in tables:
        names = {uc["name"] for uc in inspector.get_unique_constraints("cash_movements")}
        if REFERENCE_CONSTRAINT not in names:
            errors.append(
                f"cash_movements lacks {REFERENCE_CONSTRAINT}; duplicate references are not guarded."
            )
    return errors


def main() -> int:
    database_url = _load_database_url()
    url = make_url(database_url)
    script = ScriptDirectory.from_config(Config(str(ALEMBIC_INI)))
    heads = script.get_heads()

    engine = create_engine(database_url, future=True)
    try:
        db_revision = _fetch_db_revision(engine)
        errors = _schema_errors(engine)
    finally:
        engine.dispose()

    print("DB sanity report")
    print(f"- SQLAlchemy URL: {url.render_as_string(hide_password=True)}")
    print(f"- Alembic heads in repo: {heads}")
    print(f"- DB alembic_version: {db_revision}")

    if len(heads) != 1:
        errors.append(f"Expected exactly one alembic head, found {len(heads)}: {heads}")

    if db_revision is None:
        errors.append("Database has no alembic_version table or no revision recorded.")
    elif script.get_revision(db_revision) is None:
        errors.append(f"Database revision {db_revision} is not present in the repo revision map.")

    if errors:
        print("\nERRORS:")
        for error in errors:
            print(f"- {error}")
        return 1

    print("\nOK: alembic revision and cash ledger schema are in sync.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
