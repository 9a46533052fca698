from __future__ import annotations

import io
import json
import logging
import os
import unittest
from unittest.mock import patch

from vault_rescue.bot_runtime.logging import JsonFormatter
from vault_rescue.bot_runtime.settings import AppSettings, SettingsError
from vault_rescue.common import log_event
from vault_rescue.rescue.types import RescueReason, SizingPolicy

REQUIRED_ENV = {
    "RPC_WS": "wss://rpc.example.org/ws",
    "RPC_HTTP": "https://rpc.example.org",
    "PRIVATE_KEY": "0x" + "11" * 32,
    "OWNER_ADDRESS": "0x2222222222222222222222222222222222222222",
    "VAULT_ADDRESS": "0x3333333333333333333333333333333333333333",
}


class AppSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, REQUIRED_ENV, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.missing_required(), [])
        self.assertTrue(settings.dry_run)
        self.assertEqual(settings.max_retries, 12)
        self.assertEqual(settings.retry_base_seconds, 15.0)
        self.assertEqual(settings.sizing_policy, SizingPolicy.AVAILABLE_LIQUIDITY)
        self.assertEqual(settings.watcher_reconnect_policy, "self_heal")
        self.assertTrue(settings.patrol_enabled)
        self.assertEqual(settings.gas_policy.start_bid_gwei, 5.0)
        self.assertEqual(settings.gas_policy.ceiling_gwei, 80.0)
        self.assertEqual(settings.gas_policy.escalation_factor, 1.6)
        self.assertEqual(settings.retry_policy.backoff_growth_factor, 1.8)
        self.assertEqual(settings.retry_policy.max_delay_seconds, 600.0)

    def test_missing_required_are_reported(self) -> None:
        with patch.dict(os.environ, {"RPC_WS": "wss://rpc.example.org/ws"}, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(
            settings.missing_required(),
            ["RPC_HTTP", "PRIVATE_KEY", "OWNER_ADDRESS", "VAULT_ADDRESS"],
        )
        with self.assertRaises(SettingsError):
            settings.validate()

    def test_overrides_and_invalid_values(self) -> None:
        env = {
            **REQUIRED_ENV,
            "DRY_RUN": "false",
            "MAX_RETRIES": "not-a-number",
            "RETRY_BASE_MS": "2500",
            "SIZING_POLICY": "EVENT_DELTA",
            "PATROL_ENABLED": "no",
            "WATCHER_RECONNECT_POLICY": "fail_fast",
            "RETRY_MAX_DELAY_MS": "0",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = AppSettings.from_env()

        self.assertFalse(settings.dry_run)
        self.assertEqual(settings.max_retries, 12)
        self.assertEqual(settings.retry_base_seconds, 2.5)
        self.assertEqual(settings.sizing_policy, SizingPolicy.EVENT_DELTA)
        self.assertFalse(settings.patrol_enabled)
        self.assertEqual(settings.watcher_reconnect_policy, "fail_fast")
        self.assertEqual(settings.retry_policy.backoff_delay_seconds(10), 2.5 * 1.8**10)

    def test_summary_omits_secrets(self) -> None:
        with patch.dict(os.environ, REQUIRED_ENV, clear=True):
            summary = AppSettings.from_env().summary()

        self.assertNotIn("private_key", summary)
        self.assertNotIn(REQUIRED_ENV["PRIVATE_KEY"], json.dumps(summary))


class MainConfigExitTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_config_exits_with_code_one(self) -> None:
        import main

        logger = logging.getLogger("test.main")
        env = {"RPC_WS": REQUIRED_ENV["RPC_WS"]}
        with (
            patch.dict(os.environ, env, clear=True),
            patch.object(main, "load_dotenv"),
            patch.object(main, "setup_logger", return_value=logger),
            patch.object(main, "build_http_web3") as build_web3,
            self.assertLogs("test.main", level="ERROR") as captured,
        ):
            exit_code = await main.main()

        self.assertEqual(exit_code, 1)
        build_web3.assert_not_called()
        (record,) = captured.records
        self.assertEqual(record.event, "config_missing")
        self.assertEqual(record.missing, ["RPC_HTTP", "PRIVATE_KEY", "OWNER_ADDRESS", "VAULT_ADDRESS"])
        self.assertIn("Missing required env vars", record.error)


class StructuredLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.stream = io.StringIO()
        self.logger = logging.getLogger("test.structured")
        self.logger.handlers.clear()
        handler = logging.StreamHandler(self.stream)
        handler.setFormatter(JsonFormatter())
        self.logger.addHandler(handler)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

    def _records(self) -> list[dict[str, object]]:
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]

    def test_log_event_emits_json_with_extra_fields(self) -> None:
        log_event(
            self.logger,
            level="info",
            event="rescue_session_started",
            message="--- Rescue triggered by: startup ---",
            reason=RescueReason.STARTUP,
            attempt=1,
        )

        (record,) = self._records()
        self.assertEqual(record["event"], "rescue_session_started")
        self.assertEqual(record["level"], "INFO")
        self.assertEqual(record["reason"], "startup")
        self.assertEqual(record["attempt"], 1)

    def test_secrets_and_endpoint_keys_are_masked(self) -> None:
        log_event(
            self.logger,
            level="warning",
            event="bootstrap_error",
            message="connect failed for https://eth-mainnet.example.org/v2/abcdefghijklmnopqrstuvwxyz?api-key=xyz",
            private_key="0x" + "11" * 32,
            error="private_key=0xdeadbeef rejected",
        )

        (record,) = self._records()
        self.assertNotIn("abcdefghijklmnopqrstuvwxyz", record["message"])
        self.assertNotIn("api-key=xyz", record["message"])
        self.assertEqual(record["private_key"], "***")
        self.assertNotIn("deadbeef", record["error"])


if __name__ == "__main__":
    unittest.main()
