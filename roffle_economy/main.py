"""Service orchestrator — GameApp.

config → DB init → catalog → engines → bot client → scheduler → run.
The transport layer mounts ``app.router.handle`` (mini-app actions) and
``app.update_handler.handle_update`` (bot webhook updates).
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from . import __version__
from .action_router import ActionRouter
from .bot_client import BotClient
from .catalog import Catalog
from .config import GameConfig, load_config
from .database import GameDatabase
from .inventory import InventoryStore
from .ledger import AccountLedger
from .payment_reconciler import PaymentReconciler
from .referral_engine import ReferralEngine
from .scheduler import Scheduler
from .update_handler import UpdateHandler
from .wheel_engine import WheelResolver


class GameApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("roffle")

        # Components (initialized in setup())
        self.config: GameConfig | None = None
        self.catalog: Catalog | None = None
        self.db: GameDatabase | None = None
        self.ledger: AccountLedger | None = None
        self.inventory: InventoryStore | None = None
        self.wheel: WheelResolver | None = None
        self.referrals: ReferralEngine | None = None
        self.payments: PaymentReconciler | None = None
        self.bot_client: BotClient | None = None
        self.router: ActionRouter | None = None
        self.update_handler: UpdateHandler | None = None
        self.scheduler: Scheduler | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._stop_event = asyncio.Event()

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    async def setup(self) -> None:
        """Load config and build every component without starting background work."""
        # 1. Load and validate config
        self.config = load_config(str(self.config_path))
        self.catalog = Catalog.from_config(self.config)
        self.logger.info(
            "Config loaded: %d tiers, %d bundles, spin cap policy '%s'",
            len(self.catalog.tiers), len(self.catalog.bundles), self.catalog.spin_cap_policy,
        )

        # 2. Initialize database
        self.db = GameDatabase(self.config.database.path, self.logger)
        await self.db.initialize()
        self.logger.info("Database initialized: %s", self.config.database.path)

        # 3. Domain components
        self.bot_client = BotClient(self.config.bot, self.logger)
        self.ledger = AccountLedger(self.config, self.db, self.catalog, self.logger)
        self.inventory = InventoryStore(self.config, self.db, self.catalog, self.logger)
        self.wheel = WheelResolver(self.config, self.ledger, self.catalog, self.logger)
        self.referrals = ReferralEngine(self.config, self.db, self.ledger, self.logger)
        self.payments = PaymentReconciler(
            self.config, self.db, self.ledger, self.catalog, self.logger,
            bot_client=self.bot_client,
        )
        self.router = ActionRouter(
            ledger=self.ledger,
            wheel=self.wheel,
            referrals=self.referrals,
            payments=self.payments,
            inventory=self.inventory,
            logger=self.logger,
        )
        self.update_handler = UpdateHandler(
            config=self.config,
            ledger=self.ledger,
            referrals=self.referrals,
            payments=self.payments,
            bot_client=self.bot_client,
            logger=self.logger,
        )
        self.scheduler = Scheduler(self.config, self.referrals, self.logger)

    async def start(self) -> None:
        """Start the service and block until stop() is called."""
        self.logger.info("Starting roffle-economy %s...", __version__)
        self._start_time = time.time()

        await self.setup()

        if self.config.bot.token:
            await self.bot_client.start()
            self.logger.info("Bot API client started: %s", self.config.bot.api_base)
        else:
            self.logger.warning("No bot token configured; outbound messages are disabled")

        # Roll forward anything a previous run left half-credited.
        await self.referrals.reconcile_pending()
        await self.scheduler.start()

        self._running = True
        self.logger.info("roffle-economy running")
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Graceful shutdown."""
        if not self._running:
            self._stop_event.set()
            return
        self._running = False
        self.logger.info("Stopping roffle-economy...")

        if self.scheduler:
            await self.scheduler.stop()
        if self.bot_client:
            await self.bot_client.stop()

        self._stop_event.set()
        self.logger.info("roffle-economy stopped")

    def reload_config(self) -> GameConfig:
        """Re-read the config file and hot-swap it into every component.

        Raises on an invalid file; the running config is kept in that case.
        """
        new_config = load_config(str(self.config_path))
        new_catalog = Catalog.from_config(new_config)

        self.config = new_config
        self.catalog = new_catalog
        self.ledger.update_config(new_config, new_catalog)
        self.inventory.update_config(new_config, new_catalog)
        self.wheel.update_config(new_config, new_catalog)
        self.referrals.update_config(new_config)
        self.payments.update_config(new_config, new_catalog)
        self.update_handler.update_config(new_config)
        self.scheduler.update_config(new_config)
        self.logger.info("Config reloaded from %s", self.config_path)
        return new_config
