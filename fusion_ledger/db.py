from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Writers wait on each other instead of failing fast with "database is locked".
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, echo=settings.database_echo, future=True, **_engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
Base = declarative_base()


if engine.dialect.name == "sqlite":

    @event.listens_for(engine, "connect")
    def _sqlite_on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy own transaction boundaries so BEGIN IMMEDIATE below takes effect.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_on_begin(conn):
        # Take the write lock up front: a balance check can never race a concurrent debit.
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
