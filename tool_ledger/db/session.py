import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def build_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # FastAPI runs sync endpoints on a worker thread pool.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(
        url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


TOOL_LEDGER_DB_URL = _require_env("TOOL_LEDGER_DB_URL")

engine_ledger = build_engine(TOOL_LEDGER_DB_URL)

SessionLocalLedger = build_session_factory(engine_ledger)
