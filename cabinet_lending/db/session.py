from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cabinet_lending.config import _require_env


CABINET_LENDING_DB_URL = _require_env("CABINET_LENDING_DB_URL")


def _engine_kwargs(db_url: str) -> dict:
    if db_url.startswith("sqlite") and ":memory:" in db_url:
        # One shared connection, otherwise every session sees an empty database.
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


engine = create_engine(
    CABINET_LENDING_DB_URL,
    future=True,
    **_engine_kwargs(CABINET_LENDING_DB_URL),
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
