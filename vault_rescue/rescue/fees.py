from __future__ import annotations

import asyncio
import logging

from web3 import AsyncWeb3

from vault_rescue.common import log_event

from .types import FeeQuote, gwei_to_wei


class Web3FeeOracle:
    """Resolves a competitive gas price for the next redeem submission.

    Resolution order is the EIP-1559 max fee (``2 * baseFee + tip``), then the
    legacy ``eth_gasPrice``, then the caller's preferred bid. Ceiling
    enforcement is left to the caller.
    """

    def __init__(self, *, logger: logging.Logger, w3: AsyncWeb3) -> None:
        self._logger = logger
        self._w3 = w3

    async def quote(self, preferred_bid_gwei: float) -> FeeQuote:
        try:
            dynamic_fee = await self._fetch_dynamic_fee()
            if dynamic_fee is not None and dynamic_fee > 0:
                return FeeQuote(wei=dynamic_fee, source="eip1559")
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="fee_quote_dynamic_failed",
                message="Dynamic fee query failed; trying legacy gas price",
                error=str(error),
            )

        try:
            gas_price = int(await self._w3.eth.gas_price)
            if gas_price > 0:
                return FeeQuote(wei=gas_price, source="legacy_gas_price")
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="fee_quote_legacy_failed",
                message="Legacy gas price query failed",
                error=str(error),
            )

        fallback = gwei_to_wei(preferred_bid_gwei)
        log_event(
            self._logger,
            level="warning",
            event="fee_quote_fallback",
            message="Falling back to preferred fee bid",
            preferred_bid_gwei=preferred_bid_gwei,
            fee_bid_wei=fallback,
        )
        return FeeQuote(wei=fallback, source="preferred_bid")

    async def _fetch_dynamic_fee(self) -> int | None:
        block = await self._w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            return None
        priority_fee = int(await self._w3.eth.max_priority_fee)
        return int(base_fee) * 2 + priority_fee
