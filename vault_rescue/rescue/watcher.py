from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from eth_abi import decode as abi_decode
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3, WebSocketProvider

from vault_rescue.common import log_event, wait_with_stop

from .types import RescueReason, RescueTrigger, WatcherConnectionLost

RECONNECT_POLICY_SELF_HEAL = "self_heal"
RECONNECT_POLICY_FAIL_FAST = "fail_fast"

DEPOSIT_TOPIC = HexBytes(Web3.keccak(text="Deposit(address,address,uint256,uint256)"))
WITHDRAW_TOPIC = HexBytes(Web3.keccak(text="Withdraw(address,address,address,uint256,uint256)"))
TRANSFER_TOPIC = HexBytes(Web3.keccak(text="Transfer(address,address,uint256)"))

TriggerSink = Callable[[RescueTrigger], None]


def normalize_reconnect_policy(value: str) -> str:
    policy = (value or "").strip().lower().replace("-", "_")
    if policy in {RECONNECT_POLICY_SELF_HEAL, RECONNECT_POLICY_FAIL_FAST}:
        return policy
    return RECONNECT_POLICY_SELF_HEAL


def compute_reconnect_delay_seconds(
    *,
    failure_count: int,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
) -> float:
    if failure_count <= 0:
        return 0.0
    return min(max_seconds, base_seconds * float(2 ** (failure_count - 1)))


def _topic_address(topic: Any) -> str:
    return Web3.to_checksum_address("0x" + bytes(HexBytes(topic))[-20:].hex())


def map_log_to_trigger(log: Any, *, vault_address: str) -> RescueTrigger | None:
    topics = [HexBytes(topic) for topic in (log.get("topics") or [])]
    if not topics:
        return None

    data = HexBytes(log.get("data") or b"")
    tx_hash_raw = log.get("transactionHash")
    tx_hash = Web3.to_hex(HexBytes(tx_hash_raw)) if tx_hash_raw else None
    topic0 = topics[0]

    if topic0 == DEPOSIT_TOPIC:
        assets, _shares = abi_decode(["uint256", "uint256"], bytes(data))
        return RescueTrigger(reason=RescueReason.DEPOSIT_EVENT, assets=int(assets), tx_hash=tx_hash)

    if topic0 == WITHDRAW_TOPIC:
        assets, _shares = abi_decode(["uint256", "uint256"], bytes(data))
        return RescueTrigger(reason=RescueReason.WITHDRAW_EVENT, assets=int(assets), tx_hash=tx_hash)

    if topic0 == TRANSFER_TOPIC and len(topics) >= 3:
        # Only transfers into the vault look like new liquidity.
        if _topic_address(topics[2]) != Web3.to_checksum_address(vault_address):
            return None
        # Transfer on the vault moves shares, not underlying assets.
        (value,) = abi_decode(["uint256"], bytes(data))
        return RescueTrigger(reason=RescueReason.TRANSFER_EVENT, shares=int(value), tx_hash=tx_hash)

    return None


class VaultEventWatcher:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        ws_url: str,
        vault_address: str,
        emit: TriggerSink,
        stop_event: asyncio.Event,
        reconnect_policy: str = RECONNECT_POLICY_SELF_HEAL,
        reconnect_base_seconds: float = 1.0,
        reconnect_max_delay_seconds: float = 30.0,
    ) -> None:
        self._logger = logger
        self._ws_url = ws_url
        self.vault_address = Web3.to_checksum_address(vault_address)
        self._emit = emit
        self._stop_event = stop_event
        self.reconnect_policy = normalize_reconnect_policy(reconnect_policy)
        self._reconnect_base_seconds = max(0.1, float(reconnect_base_seconds))
        self._reconnect_max_delay_seconds = max(self._reconnect_base_seconds, float(reconnect_max_delay_seconds))
        self._subscription_ids: set[str] = set()
        self._failure_count = 0

    @property
    def log_filter(self) -> dict[str, Any]:
        return {
            "address": self.vault_address,
            "topics": [[Web3.to_hex(DEPOSIT_TOPIC), Web3.to_hex(WITHDRAW_TOPIC), Web3.to_hex(TRANSFER_TOPIC)]],
        }

    async def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                async for log in self._stream_logs():
                    # A subscribe that drops before delivering keeps backing off.
                    self._failure_count = 0
                    self._handle_log(log)
                if self._stop_event.is_set():
                    return
                raise ConnectionError("log subscription stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as error:
                self._subscription_ids.clear()
                if self.reconnect_policy == RECONNECT_POLICY_FAIL_FAST:
                    log_event(
                        self._logger,
                        level="error",
                        event="watcher_connection_lost",
                        message="WS closed. Exit.",
                        error=str(error),
                    )
                    raise WatcherConnectionLost(f"log subscription lost: {error}") from error

                self._failure_count += 1
                delay_seconds = compute_reconnect_delay_seconds(
                    failure_count=self._failure_count,
                    base_seconds=self._reconnect_base_seconds,
                    max_seconds=self._reconnect_max_delay_seconds,
                )
                log_event(
                    self._logger,
                    level="warning",
                    event="watcher_reconnect_scheduled",
                    message="Log subscription lost; reconnecting",
                    failure_count=self._failure_count,
                    delay_seconds=delay_seconds,
                    error=str(error),
                )
                await wait_with_stop(self._stop_event, delay_seconds)

    def _handle_log(self, log: Any) -> None:
        try:
            trigger = map_log_to_trigger(log, vault_address=self.vault_address)
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="watcher_log_decode_failed",
                message="Ignoring undecodable vault log",
                error=str(error),
            )
            return
        if trigger is not None:
            self._emit(trigger)

    async def _stream_logs(self) -> AsyncIterator[Any]:
        async with AsyncWeb3(WebSocketProvider(self._ws_url)) as w3:
            # Registrations from a previous connection must never dispatch again.
            self._subscription_ids.clear()
            subscription_id = await w3.eth.subscribe("logs", self.log_filter)
            self._subscription_ids.add(str(subscription_id))
            log_event(
                self._logger,
                level="info",
                event="watcher_connected",
                message="WS connected.",
                subscription_id=str(subscription_id),
                vault=self.vault_address,
            )

            async for payload in w3.socket.process_subscriptions():
                if self._stop_event.is_set():
                    return
                if str(payload.get("subscription")) not in self._subscription_ids:
                    continue
                yield payload["result"]
