import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


DEFAULT_AUDIT_DB_URL = "sqlite+pysqlite:///./console_audit.db"

CONSOLE_AUDIT_DB_URL = (os.environ.get("CONSOLE_AUDIT_DB_URL") or DEFAULT_AUDIT_DB_URL).strip()

_engine_kwargs = {"pool_pre_ping": True, "future": True}
if CONSOLE_AUDIT_DB_URL.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}

engine_audit = create_engine(CONSOLE_AUDIT_DB_URL, **_engine_kwargs)

SessionLocalAudit = sessionmaker(
    bind=engine_audit,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
