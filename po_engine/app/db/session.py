from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from po_engine.app.core.config import settings


def make_engine(url: str, **kwargs):
    """
    Postgres in production. SQLite is accepted for local runs and tests; pysqlite
    needs explicit BEGIN handling for SAVEPOINT (bulk approvals nest one per order).
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, **kwargs)

    kwargs.setdefault("connect_args", {"check_same_thread": False})
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs.setdefault("poolclass", StaticPool)
    eng = create_engine(url, **kwargs)

    @event.listens_for(eng, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return eng


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
