"""Shared test fixtures for roffle-economy."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from roffle_economy.action_router import ActionRouter
from roffle_economy.bot_client import BotClient
from roffle_economy.catalog import Catalog
from roffle_economy.config import GameConfig
from roffle_economy.database import GameDatabase
from roffle_economy.inventory import InventoryStore
from roffle_economy.ledger import AccountLedger
from roffle_economy.payment_reconciler import PaymentReconciler
from roffle_economy.referral_engine import ReferralEngine
from roffle_economy.update_handler import UpdateHandler
from roffle_economy.wheel_engine import WheelResolver


# ── Minimal config dict matching GameConfig schema ──────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "database": {"path": ":memory:"},
        "bot": {"token": "123:test", "app_url": "https://roffle.test"},
        "scheduler": {"referral_reconcile_enabled": False},
        "defaults": {"starting_spins": 20, "starting_tier": "free", "spin_cap_policy": "uncapped"},
        "referral": {"reward_coins": 200, "reward_spins": 20},
    }
    base.update(overrides)
    return base


def make_config(**overrides) -> GameConfig:
    return GameConfig(**make_config_dict(**overrides))


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> GameConfig:
    """Return a parsed GameConfig."""
    return GameConfig(**sample_config_dict)


@pytest.fixture
def catalog(sample_config: GameConfig) -> Catalog:
    return Catalog.from_config(sample_config)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_roffle.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[GameDatabase, None]:
    """Provide an initialized database with temp file."""
    db = GameDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def mock_bot() -> MagicMock:
    """Return a mock BotClient with async methods."""
    bot = MagicMock(spec=BotClient)
    bot.start = AsyncMock()
    bot.stop = AsyncMock()
    bot.send_message = AsyncMock(return_value=True)
    bot.send_play_button = AsyncMock(return_value=True)
    bot.answer_pre_checkout_query = AsyncMock(return_value=True)
    bot.create_invoice_link = AsyncMock(return_value="https://t.me/$invoice-abc")
    return bot


@pytest_asyncio.fixture
async def ledger(
    sample_config: GameConfig, database: GameDatabase, catalog: Catalog,
) -> AccountLedger:
    return AccountLedger(sample_config, database, catalog, logging.getLogger("test"))


@pytest_asyncio.fixture
async def inventory(
    sample_config: GameConfig, database: GameDatabase, catalog: Catalog,
) -> InventoryStore:
    return InventoryStore(sample_config, database, catalog, logging.getLogger("test"))


@pytest_asyncio.fixture
async def wheel(sample_config: GameConfig, ledger: AccountLedger, catalog: Catalog) -> WheelResolver:
    return WheelResolver(sample_config, ledger, catalog, logging.getLogger("test"))


@pytest_asyncio.fixture
async def referral_engine(
    sample_config: GameConfig, database: GameDatabase, ledger: AccountLedger,
) -> ReferralEngine:
    return ReferralEngine(sample_config, database, ledger, logging.getLogger("test"))


@pytest_asyncio.fixture
async def payments(
    sample_config: GameConfig,
    database: GameDatabase,
    ledger: AccountLedger,
    catalog: Catalog,
    mock_bot: MagicMock,
) -> PaymentReconciler:
    return PaymentReconciler(
        sample_config, database, ledger, catalog, logging.getLogger("test"),
        bot_client=mock_bot,
    )


@pytest_asyncio.fixture
async def router(
    ledger: AccountLedger,
    wheel: WheelResolver,
    referral_engine: ReferralEngine,
    payments: PaymentReconciler,
    inventory: InventoryStore,
) -> ActionRouter:
    return ActionRouter(
        ledger=ledger,
        wheel=wheel,
        referrals=referral_engine,
        payments=payments,
        inventory=inventory,
        logger=logging.getLogger("test"),
    )


@pytest_asyncio.fixture
async def update_handler(
    sample_config: GameConfig,
    ledger: AccountLedger,
    referral_engine: ReferralEngine,
    payments: PaymentReconciler,
    mock_bot: MagicMock,
) -> UpdateHandler:
    return UpdateHandler(
        config=sample_config,
        ledger=ledger,
        referrals=referral_engine,
        payments=payments,
        bot_client=mock_bot,
        logger=logging.getLogger("test"),
    )


def payload(buyer_id: int, item_type: str, item_id: str) -> str:
    """Invoice payload as the mini-app builds it."""
    return f'{{"tg_id":{buyer_id},"item_type":"{item_type}","item_id":"{item_id}"}}'
