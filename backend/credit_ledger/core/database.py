"""Async database engine and ledger store wiring.

Configures the SQLAlchemy async engine with connection pooling and builds
the SqlLedgerStore the ledger services run against.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from credit_ledger.core.config import Settings, settings
from credit_ledger.repositories.credit_repository import SqlLedgerStore


def create_session_factory(
    app_settings: Settings | None = None,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an engine and a session factory for the configured database.

    Sessions keep attributes loaded after commit, so ledger entries returned
    from a finished unit of work stay readable.

    Args:
        app_settings: Settings to read the URL from (defaults to environment).

    Returns:
        Tuple of (engine, session factory).
    """
    cfg = app_settings or settings
    engine = create_async_engine(
        cfg.database_url,
        echo=cfg.environment == "development",
        pool_pre_ping=True,
    )
    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, factory


def create_ledger_store(
    session_factory: async_sessionmaker[AsyncSession],
) -> SqlLedgerStore:
    """Build the SQL-backed ledger store over a session factory."""
    return SqlLedgerStore(session_factory)
