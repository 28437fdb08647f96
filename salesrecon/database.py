"""Database connection and session factory.

All datetimes loaded from the store are tagged as UTC by UTCDateTime so
snapshot comparisons never mix naive and aware values.
"""

from datetime import timezone

from sqlalchemy import DateTime, TypeDecorator, create_engine, event
from sqlalchemy.orm import sessionmaker

from .config import settings


class UTCDateTime(TypeDecorator):
    """DateTime type that ensures UTC timezone on load."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def configure_sqlite(engine, begin_statement: str = "BEGIN") -> None:
    """Enable FKs and driver-level BEGIN so SAVEPOINTs nest correctly on pysqlite.

    Pass begin_statement="BEGIN IMMEDIATE" when several connections write to
    one database file, so writers queue on the lock instead of failing to
    upgrade a read transaction.
    """

    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_conn, _):
        dbapi_conn.isolation_level = None
        dbapi_conn.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql(begin_statement)


if is_sqlite_url(settings.database_url):
    engine = create_engine(
        settings.database_url,
        connect_args={"check_same_thread": False},
    )
    configure_sqlite(engine)
else:
    engine = create_engine(
        settings.database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={"connect_timeout": 10},
    )

    @event.listens_for(engine, "connect")
    def _set_timezone(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("SET timezone = 'UTC'")
        cursor.close()


SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
