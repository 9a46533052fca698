from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

GWEI = 1_000_000_000

# Subset of ERC-4626 + ERC-20 used by the rescue flow.
VAULT_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "Deposit",
        "anonymous": False,
        "inputs": [
            {"name": "caller", "type": "address", "indexed": True},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "assets", "type": "uint256", "indexed": False},
            {"name": "shares", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Withdraw",
        "anonymous": False,
        "inputs": [
            {"name": "caller", "type": "address", "indexed": True},
            {"name": "receiver", "type": "address", "indexed": True},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "assets", "type": "uint256", "indexed": False},
            {"name": "shares", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "maxRedeem",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "convertToShares",
        "stateMutability": "view",
        "inputs": [{"name": "assets", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "convertToAssets",
        "stateMutability": "view",
        "inputs": [{"name": "shares", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "redeem",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "shares", "type": "uint256"},
            {"name": "receiver", "type": "address"},
            {"name": "owner", "type": "address"},
        ],
        "outputs": [{"name": "assets", "type": "uint256"}],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "symbol",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def gwei_to_wei(value_gwei: float) -> int:
    return int(Decimal(str(max(0.0, float(value_gwei)))) * GWEI)


def format_units(amount: int, decimals: int) -> str:
    if decimals <= 0:
        return str(amount)
    scaled = Decimal(int(amount)) / (Decimal(10) ** int(decimals))
    text = format(scaled, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


class RescueReason(str, Enum):
    STARTUP = "startup"
    DEPOSIT_EVENT = "deposit_event"
    WITHDRAW_EVENT = "withdraw_event"
    TRANSFER_EVENT = "transfer_event"
    PATROL = "patrol"


class SessionState(str, Enum):
    SIZING = "sizing"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionState.SUCCEEDED, SessionState.EXHAUSTED}


class AttemptOutcome(str, Enum):
    REVERTED = "reverted"
    CONFIRMED_FAILURE = "confirmed_failure"
    CONFIRMED_SUCCESS = "confirmed_success"
    TRANSPORT_ERROR = "transport_error"


class SizingPolicy(str, Enum):
    FULL_BALANCE = "full_balance"
    AVAILABLE_LIQUIDITY = "available_liquidity"
    EVENT_DELTA = "event_delta"


def normalize_sizing_policy(value: str) -> SizingPolicy:
    mode = (value or "").strip().lower()
    for policy in SizingPolicy:
        if policy.value == mode:
            return policy
    return SizingPolicy.AVAILABLE_LIQUIDITY


@dataclass(slots=True, frozen=True)
class RescueTrigger:
    reason: RescueReason
    observed_at: str = field(default_factory=now_iso)
    assets: int | None = None
    tx_hash: str | None = None
    shares: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["reason"] = self.reason.value
        return payload


@dataclass(slots=True, frozen=True)
class RedeemRequest:
    shares: int
    receiver: str
    owner: str


@dataclass(slots=True, frozen=True)
class GasPolicy:
    start_bid_gwei: float
    ceiling_gwei: float
    escalation_factor: float = 1.6

    @property
    def ceiling_wei(self) -> int:
        return gwei_to_wei(self.ceiling_gwei)

    def initial_bid_gwei(self) -> float:
        return min(self.ceiling_gwei, max(0.0, self.start_bid_gwei))

    def escalate(self, current_bid_gwei: float) -> float:
        return min(self.ceiling_gwei, current_bid_gwei * max(1.0, self.escalation_factor))


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 12
    backoff_base_seconds: float = 15.0
    backoff_growth_factor: float = 1.8
    max_delay_seconds: float = 600.0

    def backoff_delay_seconds(self, attempt_count: int) -> float:
        delay = self.backoff_base_seconds * (self.backoff_growth_factor ** max(0, attempt_count))
        if self.max_delay_seconds > 0:
            return min(self.max_delay_seconds, delay)
        return delay


@dataclass(slots=True, frozen=True)
class AttemptRecord:
    index: int
    fee_bid_wei: int
    outcome: AttemptOutcome
    tx_hash: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        return payload


@dataclass(slots=True)
class RescueSession:
    trigger: RescueTrigger
    current_fee_bid_gwei: float
    state: SessionState = SessionState.SIZING
    attempt_count: int = 0
    pending_reason: RescueReason | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: str = field(default_factory=now_iso)

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal


@dataclass(slots=True, frozen=True)
class SessionReport:
    session_id: str
    state: SessionState
    reason: RescueReason
    shares: int
    attempts: tuple[AttemptRecord, ...]
    sent: bool
    detail: str
    tx_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "reason": self.reason.value,
            "shares": self.shares,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "sent": self.sent,
            "detail": self.detail,
            "tx_hash": self.tx_hash,
        }


@dataclass(slots=True, frozen=True)
class FeeQuote:
    wei: int
    source: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class PreparedRedeem:
    request: RedeemRequest
    call: dict[str, Any]
    gas_limit: int
    fee_bid_wei: int
    fee_source: str


class RedeemRevertedError(RuntimeError):
    pass


class ReceiptTimeoutError(RuntimeError):
    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class WatcherConnectionLost(RuntimeError):
    pass


class VaultService(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def healthcheck(self) -> None:
        ...

    async def balance_of(self, owner: str) -> int:
        ...

    async def max_redeem(self, owner: str) -> int:
        ...

    async def convert_to_shares(self, assets: int) -> int:
        ...

    async def convert_to_assets(self, shares: int) -> int:
        ...

    async def decimals(self) -> int:
        ...

    def build_redeem_call(self, request: RedeemRequest) -> dict[str, Any]:
        ...

    async def simulate(self, call: dict[str, Any]) -> None:
        ...

    async def estimate_gas(self, call: dict[str, Any]) -> int:
        ...

    async def submit(self, call: dict[str, Any], *, gas_limit: int, gas_price_wei: int) -> str:
        ...

    async def wait_for_receipt(self, tx_hash: str) -> int:
        ...


class FeeOracle(Protocol):
    async def quote(self, preferred_bid_gwei: float) -> FeeQuote:
        ...
