"""Balance projection triggers.

``users.credits_balance`` is a cache of ``SUM(credit_transactions.amount)``.
Two triggers keep it honest:

* ``refresh_credits_balance`` recomputes the sum for the affected user after
  every write to ``credit_transactions``.
* ``protect_credits_balance`` rejects any update of ``credits_balance`` whose
  new value differs from the recomputed sum. Lost updates from
  read-modify-write code become a hard database error instead.

Both PostgreSQL and SQLite are supported. Rejections surface as
``sqlalchemy.exc.IntegrityError`` on both.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, List

from sqlalchemy import event
from sqlalchemy.engine import Connection

from .db import Base

logger = logging.getLogger(__name__)

GUARD_TRIGGER = "protect_credits_balance"
GUARD_MESSAGE = "Direct modification of credits_balance is not allowed. Use credit_transactions instead."

_USER_SUM = "SELECT COALESCE(SUM(amount), 0) FROM credit_transactions WHERE user_id = {ref}"

_POSTGRES_REFRESH = [
    f"""
    CREATE OR REPLACE FUNCTION refresh_credits_balance()
    RETURNS TRIGGER AS $$
    BEGIN
        IF TG_OP IN ('UPDATE', 'DELETE') THEN
            UPDATE users SET credits_balance = ({_USER_SUM.format(ref="OLD.user_id")})
            WHERE id = OLD.user_id;
        END IF;
        IF TG_OP IN ('INSERT', 'UPDATE') THEN
            UPDATE users SET credits_balance = ({_USER_SUM.format(ref="NEW.user_id")})
            WHERE id = NEW.user_id;
        END IF;
        RETURN NULL;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS refresh_credits_balance ON credit_transactions",
    """
    CREATE TRIGGER refresh_credits_balance
    AFTER INSERT OR UPDATE OR DELETE ON credit_transactions
    FOR EACH ROW EXECUTE FUNCTION refresh_credits_balance()
    """,
]

_POSTGRES_GUARD = [
    f"""
    CREATE OR REPLACE FUNCTION {GUARD_TRIGGER}()
    RETURNS TRIGGER AS $$
    BEGIN
        IF NEW.credits_balance IS DISTINCT FROM ({_USER_SUM.format(ref="NEW.id")}) THEN
            RAISE EXCEPTION '{GUARD_MESSAGE}' USING ERRCODE = 'check_violation';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    f"DROP TRIGGER IF EXISTS {GUARD_TRIGGER} ON users",
    f"""
    CREATE TRIGGER {GUARD_TRIGGER}
    BEFORE UPDATE OF credits_balance ON users
    FOR EACH ROW
    WHEN (OLD.credits_balance IS DISTINCT FROM NEW.credits_balance)
    EXECUTE FUNCTION {GUARD_TRIGGER}()
    """,
]

_SQLITE_REFRESH = [
    f"""
    CREATE TRIGGER IF NOT EXISTS refresh_credits_balance_insert
    AFTER INSERT ON credit_transactions
    BEGIN
        UPDATE users SET credits_balance = ({_USER_SUM.format(ref="NEW.user_id")}) WHERE id = NEW.user_id;
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS refresh_credits_balance_update
    AFTER UPDATE ON credit_transactions
    BEGIN
        UPDATE users SET credits_balance = ({_USER_SUM.format(ref="OLD.user_id")}) WHERE id = OLD.user_id;
        UPDATE users SET credits_balance = ({_USER_SUM.format(ref="NEW.user_id")}) WHERE id = NEW.user_id;
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS refresh_credits_balance_delete
    AFTER DELETE ON credit_transactions
    BEGIN
        UPDATE users SET credits_balance = ({_USER_SUM.format(ref="OLD.user_id")}) WHERE id = OLD.user_id;
    END
    """,
]

_SQLITE_GUARD = [
    f"""
    CREATE TRIGGER IF NOT EXISTS {GUARD_TRIGGER}
    BEFORE UPDATE OF credits_balance ON users
    FOR EACH ROW
    WHEN NEW.credits_balance IS NOT OLD.credits_balance
        AND NEW.credits_balance IS NOT ({_USER_SUM.format(ref="NEW.id")})
    BEGIN
        SELECT RAISE(ABORT, '{GUARD_MESSAGE}');
    END
    """,
]


def _statements(dialect: str, guard: bool = True, refresh: bool = True) -> List[str]:
    if dialect == "postgresql":
        return (_POSTGRES_REFRESH if refresh else []) + (_POSTGRES_GUARD if guard else [])
    if dialect == "sqlite":
        return (_SQLITE_REFRESH if refresh else []) + (_SQLITE_GUARD if guard else [])
    raise NotImplementedError(f"Balance triggers are not available for dialect '{dialect}'")


def install_balance_triggers(connection: Connection) -> None:
    """Create (or replace) the projection triggers on the given connection."""
    dialect = connection.dialect.name
    for statement in _statements(dialect):
        connection.exec_driver_sql(statement)
    logger.info(f"Installed credit balance triggers for {dialect}")


def drop_balance_triggers(connection: Connection) -> None:
    dialect = connection.dialect.name
    if dialect == "postgresql":
        connection.exec_driver_sql(f"DROP TRIGGER IF EXISTS {GUARD_TRIGGER} ON users")
        connection.exec_driver_sql("DROP TRIGGER IF EXISTS refresh_credits_balance ON credit_transactions")
        connection.exec_driver_sql(f"DROP FUNCTION IF EXISTS {GUARD_TRIGGER}()")
        connection.exec_driver_sql("DROP FUNCTION IF EXISTS refresh_credits_balance()")
    elif dialect == "sqlite":
        for name in (GUARD_TRIGGER, "refresh_credits_balance_insert", "refresh_credits_balance_update", "refresh_credits_balance_delete"):
            connection.exec_driver_sql(f"DROP TRIGGER IF EXISTS {name}")


@contextmanager
def suspend_balance_guard(connection: Connection) -> Iterator[Connection]:
    """Allow direct writes to ``credits_balance`` for the enclosed block.

    Meant for maintenance scripts that load historical balances. The block runs
    in a savepoint; if it raises, rolling back to the savepoint restores the
    guard and discards the block's writes, and the enclosing transaction stays
    usable. Any balance written here is drift until reconciliation repairs it.
    """
    dialect = connection.dialect.name
    logger.warning(f"Suspending {GUARD_TRIGGER} trigger")
    savepoint = connection.begin_nested()
    try:
        if dialect == "postgresql":
            connection.exec_driver_sql(f"ALTER TABLE users DISABLE TRIGGER {GUARD_TRIGGER}")
        else:
            connection.exec_driver_sql(f"DROP TRIGGER IF EXISTS {GUARD_TRIGGER}")
        yield connection
    except BaseException:
        if savepoint.is_active:
            savepoint.rollback()
        logger.warning(f"Restored {GUARD_TRIGGER} trigger after a failed block")
        raise
    if dialect == "postgresql":
        connection.exec_driver_sql(f"ALTER TABLE users ENABLE TRIGGER {GUARD_TRIGGER}")
    else:
        for statement in _statements(dialect, refresh=False):
            connection.exec_driver_sql(statement)
    savepoint.commit()
    logger.info(f"Restored {GUARD_TRIGGER} trigger")


@event.listens_for(Base.metadata, "after_create")
def _install_after_create(target, connection, tables=(), **kw):
    # Existing databases get their triggers from the Alembic migration.
    if {t.name for t in tables or ()} & {"users", "credit_transactions"}:
        install_balance_triggers(connection)
