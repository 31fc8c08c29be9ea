"""Scheduler module — periodic background tasks.

Currently: rolling forward referral rewards left uncredited by a store
failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import GameConfig
    from .referral_engine import ReferralEngine


class Scheduler:
    """Central module for all periodic tasks."""

    def __init__(
        self,
        config: GameConfig,
        referral_engine: ReferralEngine,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._referrals = referral_engine
        self._logger = logger or logging.getLogger("roffle.scheduler")
        self._tasks: list[asyncio.Task] = []

    def update_config(self, new_config: GameConfig) -> None:
        """Hot-swap the config reference (intervals apply from the next cycle)."""
        self._config = new_config

    async def start(self) -> None:
        """Start all scheduled tasks."""
        if self._config.scheduler.referral_reconcile_enabled:
            self._tasks.append(asyncio.create_task(self._referral_reconcile_loop()))
            self._logger.info(
                "Referral reconciliation task started (interval: %ds)",
                self._config.scheduler.referral_reconcile_interval_seconds,
            )

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def _referral_reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(max(self._config.scheduler.referral_reconcile_interval_seconds, 1))
            try:
                await self._referrals.reconcile_pending()
            except Exception:
                self._logger.exception("Referral reconciliation failed")
