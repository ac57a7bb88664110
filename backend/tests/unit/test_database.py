"""Tests for engine and ledger store wiring."""

from credit_ledger.core.config import Settings
from credit_ledger.core.database import create_ledger_store, create_session_factory
from credit_ledger.models.base import Base
from credit_ledger.models.credit import CreditTransactionType
from credit_ledger.repositories.credit_repository import SqlLedgerStore
from credit_ledger.services.credit_ledger_service import CreditLedgerService
from tests.conftest import USER_ID


class TestCreateLedgerStore:
    """Tests for create_session_factory() and create_ledger_store()."""

    async def test_store_runs_units_of_work(self, tmp_path) -> None:
        """A store built from settings persists grants across sessions."""
        cfg = Settings(
            _env_file=None,
            database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
            environment="test",
        )
        engine, factory = create_session_factory(cfg)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        store = create_ledger_store(factory)
        ledger = CreditLedgerService(store, settings=cfg)
        result = await ledger.grant(
            USER_ID, 15, CreditTransactionType.PURCHASE, "top-up"
        )

        assert isinstance(store, SqlLedgerStore)
        assert result.balance == 15
        # expire_on_commit=False keeps the returned entry readable
        assert result.transaction.amount == 15
        assert await ledger.get_balance(USER_ID) == 15
        await engine.dispose()
