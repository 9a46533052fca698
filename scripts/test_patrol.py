from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from vault_rescue.rescue.patrol import PatrolLoop
from vault_rescue.rescue.types import RescueReason

OWNER = "0x1111111111111111111111111111111111111111"


def _make_patrol(*, redeemable: int | Exception, enabled: bool = True) -> tuple[PatrolLoop, MagicMock, MagicMock]:
    vault = MagicMock()
    if isinstance(redeemable, Exception):
        vault.max_redeem = AsyncMock(side_effect=redeemable)
    else:
        vault.max_redeem = AsyncMock(return_value=redeemable)
    emit = MagicMock()
    patrol = PatrolLoop(
        logger=logging.getLogger("test.patrol"),
        vault=vault,
        owner=OWNER,
        emit=emit,
        stop_event=asyncio.Event(),
        interval_seconds=30.0,
        enabled=enabled,
    )
    return patrol, vault, emit


class PatrolLoopTests(unittest.IsolatedAsyncioTestCase):
    async def test_liquidity_emits_patrol_trigger(self) -> None:
        patrol, vault, emit = _make_patrol(redeemable=250)

        found = await patrol.patrol_once()

        self.assertTrue(found)
        vault.max_redeem.assert_awaited_once_with(OWNER)
        emit.assert_called_once()
        self.assertEqual(emit.call_args.args[0].reason, RescueReason.PATROL)

    async def test_no_liquidity_emits_nothing(self) -> None:
        patrol, _vault, emit = _make_patrol(redeemable=0)

        self.assertFalse(await patrol.patrol_once())
        emit.assert_not_called()

    async def test_query_failure_is_logged_and_skipped(self) -> None:
        patrol, _vault, emit = _make_patrol(redeemable=ConnectionError("rpc down"))

        self.assertFalse(await patrol.patrol_once())
        emit.assert_not_called()

    async def test_disabled_patrol_returns_immediately(self) -> None:
        patrol, vault, _emit = _make_patrol(redeemable=250, enabled=False)

        await asyncio.wait_for(patrol.run(), timeout=1.0)

        vault.max_redeem.assert_not_awaited()

    async def test_run_sleeps_interval_between_iterations(self) -> None:
        patrol, vault, emit = _make_patrol(redeemable=5)
        stop_event = patrol._stop_event
        sleeps: list[float] = []

        async def _fake_wait(event: asyncio.Event, seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 3:
                event.set()

        with patch("vault_rescue.rescue.patrol.wait_with_stop", new=_fake_wait):
            await asyncio.wait_for(patrol.run(), timeout=1.0)

        self.assertTrue(stop_event.is_set())
        self.assertEqual(sleeps, [30.0, 30.0, 30.0])
        self.assertEqual(vault.max_redeem.await_count, 2)
        self.assertEqual(emit.call_count, 2)


if __name__ == "__main__":
    unittest.main()
