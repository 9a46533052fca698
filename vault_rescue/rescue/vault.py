from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted

from vault_rescue.common import guarded_call, log_event

from .types import (
    ERC20_ABI,
    VAULT_ABI,
    ReceiptTimeoutError,
    RedeemRequest,
    RedeemRevertedError,
)


def build_http_web3(rpc_url: str, *, timeout_seconds: float = 15.0) -> AsyncWeb3:
    timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
    return AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


def load_signer(private_key: str) -> LocalAccount:
    value = (private_key or "").strip()
    if not value:
        raise ValueError("PRIVATE_KEY is empty.")
    if not value.startswith("0x"):
        value = f"0x{value}"
    return Account.from_key(value)


class Web3VaultService:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        w3: AsyncWeb3,
        vault_address: str,
        signer: LocalAccount,
        token_address: str = "",
        confirmations: int = 1,
        confirm_timeout_seconds: float = 180.0,
        confirm_poll_interval_seconds: float = 2.0,
    ) -> None:
        self._logger = logger
        self._w3 = w3
        self._signer = signer
        self.vault_address = AsyncWeb3.to_checksum_address(vault_address)
        self._vault = w3.eth.contract(address=self.vault_address, abi=VAULT_ABI)
        self._token = (
            w3.eth.contract(address=AsyncWeb3.to_checksum_address(token_address), abi=ERC20_ABI)
            if token_address
            else None
        )
        self._confirmations = max(1, int(confirmations))
        self._confirm_timeout_seconds = max(5.0, float(confirm_timeout_seconds))
        self._confirm_poll_interval_seconds = max(0.25, float(confirm_poll_interval_seconds))
        self._chain_id: int | None = None
        self._decimals: int | None = None

    @property
    def signer_address(self) -> str:
        return self._signer.address

    async def connect(self) -> None:
        if not await self._w3.is_connected():
            raise ConnectionError("HTTP RPC endpoint is not reachable.")
        self._chain_id = int(await self._w3.eth.chain_id)
        log_event(
            self._logger,
            level="info",
            event="vault_service_connected",
            message="Connected to HTTP RPC",
            chain_id=self._chain_id,
            vault=self.vault_address,
            signer=self.signer_address,
        )

    async def close(self) -> None:
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if callable(disconnect):
            await guarded_call(
                disconnect,
                logger=self._logger,
                event="vault_service_close_failed",
                message="Failed to close HTTP RPC session",
            )

    async def healthcheck(self) -> None:
        await self._w3.eth.block_number

    async def balance_of(self, owner: str) -> int:
        return int(await self._vault.functions.balanceOf(AsyncWeb3.to_checksum_address(owner)).call())

    async def max_redeem(self, owner: str) -> int:
        return int(await self._vault.functions.maxRedeem(AsyncWeb3.to_checksum_address(owner)).call())

    async def convert_to_shares(self, assets: int) -> int:
        return int(await self._vault.functions.convertToShares(int(assets)).call())

    async def convert_to_assets(self, shares: int) -> int:
        return int(await self._vault.functions.convertToAssets(int(shares)).call())

    async def decimals(self) -> int:
        if self._decimals is None:
            self._decimals = int(await self._vault.functions.decimals().call())
        return self._decimals

    async def underlying_balance(self, owner: str) -> int | None:
        if self._token is None:
            return None
        return int(await self._token.functions.balanceOf(AsyncWeb3.to_checksum_address(owner)).call())

    def build_redeem_call(self, request: RedeemRequest) -> dict[str, Any]:
        data = self._vault.encode_abi(
            "redeem",
            args=[
                int(request.shares),
                AsyncWeb3.to_checksum_address(request.receiver),
                AsyncWeb3.to_checksum_address(request.owner),
            ],
        )
        return {"from": self.signer_address, "to": self.vault_address, "data": data}

    async def simulate(self, call: dict[str, Any]) -> None:
        try:
            await self._w3.eth.call(call)
        except ContractLogicError as error:
            raise RedeemRevertedError(f"redeem simulation reverted: {error}") from error

    async def estimate_gas(self, call: dict[str, Any]) -> int:
        return int(await self._w3.eth.estimate_gas(call))

    async def submit(self, call: dict[str, Any], *, gas_limit: int, gas_price_wei: int) -> str:
        if self._chain_id is None:
            await self.connect()

        nonce = await self._w3.eth.get_transaction_count(self.signer_address, "pending")
        transaction = {
            "to": call["to"],
            "data": call["data"],
            "value": 0,
            "gas": int(gas_limit),
            "gasPrice": int(gas_price_wei),
            "nonce": int(nonce),
            "chainId": self._chain_id,
        }
        signed = self._signer.sign_transaction(transaction)
        try:
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as error:
            raise RedeemRevertedError(f"redeem submission reverted: {error}") from error
        return AsyncWeb3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> int:
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self._confirm_timeout_seconds,
                poll_latency=self._confirm_poll_interval_seconds,
            )
        except TimeExhausted as error:
            raise ReceiptTimeoutError(
                f"receipt not available after {self._confirm_timeout_seconds}s",
                tx_hash=tx_hash,
            ) from error

        if self._confirmations > 1:
            await self._wait_for_confirmations(int(receipt["blockNumber"]))
        return int(receipt["status"])

    async def _wait_for_confirmations(self, receipt_block: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._confirm_timeout_seconds
        while True:
            latest = int(await self._w3.eth.block_number)
            if latest - receipt_block + 1 >= self._confirmations:
                return
            if loop.time() >= deadline:
                raise ReceiptTimeoutError(
                    f"only {latest - receipt_block + 1}/{self._confirmations} confirmations observed"
                )
            await asyncio.sleep(self._confirm_poll_interval_seconds)
