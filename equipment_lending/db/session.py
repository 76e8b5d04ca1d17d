import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


EQUIPMENT_LENDING_DB_URL = _require_env("EQUIPMENT_LENDING_DB_URL")


def _engine_kwargs(db_url: str) -> dict:
    kwargs = {"pool_pre_ping": True, "future": True}
    if db_url.startswith("sqlite"):
        # Request handlers run on the threadpool.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return kwargs


engine_lending = create_engine(EQUIPMENT_LENDING_DB_URL, **_engine_kwargs(EQUIPMENT_LENDING_DB_URL))

SessionLocalLending = sessionmaker(
    bind=engine_lending,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
