from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from vault_rescue.rescue import GasPolicy, RetryPolicy, SizingPolicy, normalize_sizing_policy
from vault_rescue.rescue.watcher import normalize_reconnect_policy

REQUIRED_ENV_VARS = ("RPC_WS", "RPC_HTTP", "PRIVATE_KEY", "OWNER_ADDRESS", "VAULT_ADDRESS")


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


class SettingsError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class AppSettings:
    rpc_ws: str
    rpc_http: str
    private_key: str
    owner_address: str
    vault_address: str
    token_address: str
    dry_run: bool
    max_retries: int
    initial_gas_gwei: float
    max_gas_gwei: float
    gas_escalation_factor: float
    retry_base_seconds: float
    retry_growth_factor: float
    retry_max_delay_seconds: float
    gas_limit_multiplier: float
    fallback_gas_limit: int
    confirmations: int
    confirm_timeout_seconds: float
    sizing_policy: SizingPolicy
    patrol_enabled: bool
    patrol_interval_seconds: float
    watcher_reconnect_policy: str
    watcher_reconnect_max_delay_seconds: float
    trigger_queue_size: int
    rpc_timeout_seconds: float
    error_backoff_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            rpc_ws=os.getenv("RPC_WS", "").strip(),
            rpc_http=os.getenv("RPC_HTTP", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", "").strip(),
            owner_address=os.getenv("OWNER_ADDRESS", "").strip(),
            vault_address=os.getenv("VAULT_ADDRESS", "").strip(),
            token_address=os.getenv("TOKEN_ADDRESS", "").strip(),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            max_retries=max(1, to_int(os.getenv("MAX_RETRIES"), 12)),
            initial_gas_gwei=max(0.0, to_float(os.getenv("INITIAL_GAS_GWEI"), 5.0)),
            max_gas_gwei=max(0.0, to_float(os.getenv("MAX_GAS_GWEI"), 80.0)),
            gas_escalation_factor=max(1.0, to_float(os.getenv("GAS_ESCALATION_FACTOR"), 1.6)),
            retry_base_seconds=max(0.0, to_float(os.getenv("RETRY_BASE_MS"), 15_000.0) / 1000.0),
            retry_growth_factor=max(1.0, to_float(os.getenv("RETRY_GROWTH_FACTOR"), 1.8)),
            retry_max_delay_seconds=max(0.0, to_float(os.getenv("RETRY_MAX_DELAY_MS"), 600_000.0) / 1000.0),
            gas_limit_multiplier=max(1.0, to_float(os.getenv("GAS_LIMIT_MULTIPLIER"), 1.2)),
            fallback_gas_limit=max(21_000, to_int(os.getenv("FALLBACK_GAS_LIMIT"), 600_000)),
            confirmations=max(1, to_int(os.getenv("CONFIRMATIONS"), 1)),
            confirm_timeout_seconds=max(5.0, to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 180.0)),
            sizing_policy=normalize_sizing_policy(os.getenv("SIZING_POLICY", "available_liquidity")),
            patrol_enabled=to_bool(os.getenv("PATROL_ENABLED"), True),
            patrol_interval_seconds=max(1.0, to_float(os.getenv("PATROL_INTERVAL_SECONDS"), 60.0)),
            watcher_reconnect_policy=normalize_reconnect_policy(
                os.getenv("WATCHER_RECONNECT_POLICY", "self_heal")
            ),
            watcher_reconnect_max_delay_seconds=max(
                1.0,
                to_float(os.getenv("WATCHER_RECONNECT_MAX_DELAY_SECONDS"), 30.0),
            ),
            trigger_queue_size=max(1, to_int(os.getenv("TRIGGER_QUEUE_SIZE"), 64)),
            rpc_timeout_seconds=max(1.0, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 15.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
        )

    def missing_required(self) -> list[str]:
        values = {
            "RPC_WS": self.rpc_ws,
            "RPC_HTTP": self.rpc_http,
            "PRIVATE_KEY": self.private_key,
            "OWNER_ADDRESS": self.owner_address,
            "VAULT_ADDRESS": self.vault_address,
        }
        return [name for name in REQUIRED_ENV_VARS if not values[name]]

    def validate(self) -> None:
        missing = self.missing_required()
        if missing:
            raise SettingsError(f"Missing required env vars: {', '.join(missing)}")

    @property
    def gas_policy(self) -> GasPolicy:
        return GasPolicy(
            start_bid_gwei=self.initial_gas_gwei,
            ceiling_gwei=self.max_gas_gwei,
            escalation_factor=self.gas_escalation_factor,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            backoff_base_seconds=self.retry_base_seconds,
            backoff_growth_factor=self.retry_growth_factor,
            max_delay_seconds=self.retry_max_delay_seconds,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "vault": self.vault_address,
            "owner": self.owner_address,
            "token": self.token_address or None,
            "dry_run": self.dry_run,
            "max_retries": self.max_retries,
            "initial_gas_gwei": self.initial_gas_gwei,
            "max_gas_gwei": self.max_gas_gwei,
            "sizing_policy": self.sizing_policy.value,
            "patrol_enabled": self.patrol_enabled,
            "patrol_interval_seconds": self.patrol_interval_seconds,
            "watcher_reconnect_policy": self.watcher_reconnect_policy,
        }
