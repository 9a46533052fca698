from .engine import RedeemAttemptEngine
from .fees import Web3FeeOracle
from .orchestrator import RescueOrchestrator, enqueue_trigger, run_trigger_dispatcher
from .patrol import PatrolLoop
from .types import (
    AttemptOutcome,
    AttemptRecord,
    FeeQuote,
    GasPolicy,
    ReceiptTimeoutError,
    RedeemRequest,
    RedeemRevertedError,
    RescueReason,
    RescueSession,
    RescueTrigger,
    RetryPolicy,
    SessionReport,
    SessionState,
    SizingPolicy,
    WatcherConnectionLost,
    format_units,
    normalize_sizing_policy,
)
from .vault import Web3VaultService, build_http_web3, load_signer
from .watcher import VaultEventWatcher, map_log_to_trigger

__all__ = [
    "AttemptOutcome",
    "AttemptRecord",
    "FeeQuote",
    "GasPolicy",
    "PatrolLoop",
    "ReceiptTimeoutError",
    "RedeemAttemptEngine",
    "RedeemRequest",
    "RedeemRevertedError",
    "RescueOrchestrator",
    "RescueReason",
    "RescueSession",
    "RescueTrigger",
    "RetryPolicy",
    "SessionReport",
    "SessionState",
    "SizingPolicy",
    "VaultEventWatcher",
    "WatcherConnectionLost",
    "Web3FeeOracle",
    "Web3VaultService",
    "build_http_web3",
    "enqueue_trigger",
    "format_units",
    "load_signer",
    "map_log_to_trigger",
    "normalize_sizing_policy",
    "run_trigger_dispatcher",
]
