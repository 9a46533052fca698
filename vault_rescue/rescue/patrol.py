from __future__ import annotations

import asyncio
import logging
from typing import Callable

from vault_rescue.common import log_event, wait_with_stop

from .types import RescueReason, RescueTrigger, VaultService


class PatrolLoop:
    """Polls redeemable liquidity independently of the event stream."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        vault: VaultService,
        owner: str,
        emit: Callable[[RescueTrigger], None],
        stop_event: asyncio.Event,
        interval_seconds: float = 60.0,
        enabled: bool = True,
    ) -> None:
        self._logger = logger
        self._vault = vault
        self._owner = owner
        self._emit = emit
        self._stop_event = stop_event
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.enabled = enabled

    async def run(self) -> None:
        if not self.enabled:
            log_event(
                self._logger,
                level="info",
                event="patrol_disabled",
                message="Patrol loop disabled",
            )
            return

        while not self._stop_event.is_set():
            await wait_with_stop(self._stop_event, self.interval_seconds)
            if self._stop_event.is_set():
                return
            await self.patrol_once()

    async def patrol_once(self) -> bool:
        try:
            redeemable = await self._vault.max_redeem(self._owner)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="patrol_query_failed",
                message="Patrol liquidity query failed",
                error=str(error),
            )
            return False

        if redeemable <= 0:
            log_event(
                self._logger,
                level="debug",
                event="patrol_no_liquidity",
                message="Patrol found no redeemable shares",
            )
            return False

        log_event(
            self._logger,
            level="info",
            event="patrol_liquidity_detected",
            message="Patrol found redeemable shares",
            redeemable_shares=redeemable,
        )
        self._emit(RescueTrigger(reason=RescueReason.PATROL))
        return True
