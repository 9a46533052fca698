from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from vault_rescue.common import guarded_call, log_event

from .types import (
    AttemptOutcome,
    AttemptRecord,
    FeeOracle,
    GasPolicy,
    PreparedRedeem,
    RedeemRequest,
    RedeemRevertedError,
    RescueSession,
    RescueTrigger,
    RetryPolicy,
    SessionReport,
    SessionState,
    SizingPolicy,
    VaultService,
)

DEFAULT_GAS_LIMIT_MULTIPLIER = 1.2
DEFAULT_FALLBACK_GAS_LIMIT = 600_000

SleepFn = Callable[[float], Awaitable[None]]


class RedeemAttemptEngine:
    """Drives one rescue session from sizing to a terminal state.

    Attempts are strictly sequential: simulate, estimate, price, submit and
    confirm complete before the next attempt is scheduled.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        vault: VaultService,
        fee_oracle: FeeOracle,
        owner: str,
        receiver: str,
        gas_policy: GasPolicy,
        retry_policy: RetryPolicy,
        sizing_policy: SizingPolicy = SizingPolicy.AVAILABLE_LIQUIDITY,
        dry_run: bool = True,
        gas_limit_multiplier: float = DEFAULT_GAS_LIMIT_MULTIPLIER,
        fallback_gas_limit: int = DEFAULT_FALLBACK_GAS_LIMIT,
        sleep: SleepFn = asyncio.sleep,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._logger = logger
        self._vault = vault
        self._fee_oracle = fee_oracle
        self._owner = owner
        self._receiver = receiver
        self.gas_policy = gas_policy
        self.retry_policy = retry_policy
        self.sizing_policy = sizing_policy
        self.dry_run = dry_run
        self._gas_limit_multiplier = max(1.0, float(gas_limit_multiplier))
        self._fallback_gas_limit = max(21_000, int(fallback_gas_limit))
        self._sleep = sleep
        self._stop_event = stop_event

    def new_session(self, trigger: RescueTrigger) -> RescueSession:
        return RescueSession(
            trigger=trigger,
            current_fee_bid_gwei=self.gas_policy.initial_bid_gwei(),
        )

    async def run(self, session: RescueSession) -> SessionReport:
        session.state = SessionState.SIZING
        shares = await self._size(session.trigger)
        if not shares:
            detail = "sizing_query_failed" if shares is None else "nothing_to_rescue"
            session.state = SessionState.SUCCEEDED
            log_event(
                self._logger,
                level="info",
                event="rescue_nothing_to_rescue",
                message="No redeemable vault shares",
                session_id=session.session_id,
                sizing_policy=self.sizing_policy.value,
                detail=detail,
            )
            return self._report(session, shares=0, sent=False, detail=detail)

        request = RedeemRequest(shares=shares, receiver=self._receiver, owner=self._owner)
        session.state = SessionState.ATTEMPTING
        expected_assets = await guarded_call(
            lambda: self._vault.convert_to_assets(shares),
            logger=self._logger,
            event="rescue_expected_assets_failed",
            message="Failed to convert redeem shares to assets",
            level="info",
            session_id=session.session_id,
        )
        log_event(
            self._logger,
            level="info",
            event="rescue_sizing",
            message="Redeem request sized",
            session_id=session.session_id,
            sizing_policy=self.sizing_policy.value,
            shares=shares,
            expected_assets=expected_assets,
            receiver=request.receiver,
            owner=request.owner,
        )

        while True:
            prepared = await self._prepare(session, request)

            if self.dry_run:
                session.state = SessionState.EXHAUSTED
                log_event(
                    self._logger,
                    level="info",
                    event="redeem_dry_run",
                    message="[DRY RUN] redeem tx prepared, not sent",
                    session_id=session.session_id,
                    shares=request.shares,
                    receiver=request.receiver,
                    owner=request.owner,
                    to=prepared.call.get("to"),
                    data=prepared.call.get("data"),
                    gas_limit=prepared.gas_limit,
                    fee_bid_wei=prepared.fee_bid_wei,
                    fee_source=prepared.fee_source,
                )
                return self._report(session, shares=shares, sent=False, detail="dry_run_not_sent")

            record = await self._submit(session, prepared)
            session.attempts.append(record)
            session.attempt_count += 1

            if record.outcome is AttemptOutcome.CONFIRMED_SUCCESS:
                session.state = SessionState.SUCCEEDED
                return self._report(
                    session,
                    shares=shares,
                    sent=True,
                    detail="redeemed",
                    tx_hash=record.tx_hash,
                )

            log_event(
                self._logger,
                level="warning",
                event="redeem_attempt_failed",
                message="Redeem attempt failed",
                session_id=session.session_id,
                attempt=session.attempt_count,
                max_retries=self.retry_policy.max_retries,
                outcome=record.outcome.value,
                tx_hash=record.tx_hash,
                error=record.error,
            )

            if session.attempt_count >= self.retry_policy.max_retries:
                session.state = SessionState.EXHAUSTED
                return self._report(session, shares=shares, sent=True, detail="retries_exhausted")

            delay_seconds = self.retry_policy.backoff_delay_seconds(session.attempt_count)
            log_event(
                self._logger,
                level="info",
                event="redeem_retry_scheduled",
                message="Retrying redeem after backoff",
                session_id=session.session_id,
                attempt=session.attempt_count,
                max_retries=self.retry_policy.max_retries,
                delay_seconds=round(delay_seconds, 3),
            )
            await self._sleep(delay_seconds)
            if self._stop_event is not None and self._stop_event.is_set():
                # The interruptible sleep returns early once stop is set.
                session.state = SessionState.EXHAUSTED
                log_event(
                    self._logger,
                    level="warning",
                    event="rescue_session_stopped",
                    message="Shutdown requested; abandoning redeem retries",
                    session_id=session.session_id,
                    attempt=session.attempt_count,
                )
                return self._report(session, shares=shares, sent=True, detail="shutdown_requested")
            session.current_fee_bid_gwei = self.gas_policy.escalate(session.current_fee_bid_gwei)

    async def _size(self, trigger: RescueTrigger) -> int | None:
        try:
            if self.sizing_policy is SizingPolicy.FULL_BALANCE:
                return max(0, await self._vault.balance_of(self._owner))

            redeemable = max(0, await self._vault.max_redeem(self._owner))
            if self.sizing_policy is SizingPolicy.EVENT_DELTA:
                if trigger.shares is not None:
                    return min(max(0, trigger.shares), redeemable)
                if trigger.assets is not None:
                    delta_shares = await self._vault.convert_to_shares(trigger.assets)
                    return min(max(0, delta_shares), redeemable)
            return redeemable
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="rescue_sizing_failed",
                message="Share sizing query failed; ending session",
                sizing_policy=self.sizing_policy.value,
                error=str(error),
            )
            return None

    async def _prepare(self, session: RescueSession, request: RedeemRequest) -> PreparedRedeem:
        call = self._vault.build_redeem_call(request)

        try:
            await self._vault.simulate(call)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            # Stale liquidity reads make reverts common here; submit anyway.
            log_event(
                self._logger,
                level="info",
                event="redeem_simulation_reverted",
                message="Redeem simulation failed; proceeding to submission",
                session_id=session.session_id,
                error=str(error),
            )

        gas_limit = await self._estimate_gas_limit(session, call)

        quote = await self._fee_oracle.quote(session.current_fee_bid_gwei)
        fee_bid_wei = min(quote.wei, self.gas_policy.ceiling_wei)

        return PreparedRedeem(
            request=request,
            call=call,
            gas_limit=gas_limit,
            fee_bid_wei=fee_bid_wei,
            fee_source=quote.source,
        )

    async def _estimate_gas_limit(self, session: RescueSession, call: dict[str, Any]) -> int:
        try:
            estimate = await self._vault.estimate_gas(call)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="info",
                event="redeem_gas_estimate_fallback",
                message="Gas estimation failed; using fallback gas limit",
                session_id=session.session_id,
                fallback_gas_limit=self._fallback_gas_limit,
                error=str(error),
            )
            return self._fallback_gas_limit
        return int(estimate * self._gas_limit_multiplier)

    async def _submit(self, session: RescueSession, prepared: PreparedRedeem) -> AttemptRecord:
        index = session.attempt_count + 1
        tx_hash: str | None = None
        try:
            tx_hash = await self._vault.submit(
                prepared.call,
                gas_limit=prepared.gas_limit,
                gas_price_wei=prepared.fee_bid_wei,
            )
            log_event(
                self._logger,
                level="info",
                event="redeem_tx_sent",
                message="Sent redeem tx",
                session_id=session.session_id,
                attempt=index,
                tx_hash=tx_hash,
                gas_limit=prepared.gas_limit,
                fee_bid_wei=prepared.fee_bid_wei,
                fee_source=prepared.fee_source,
            )
            status = await self._vault.wait_for_receipt(tx_hash)
        except asyncio.CancelledError:
            raise
        except RedeemRevertedError as error:
            return AttemptRecord(
                index=index,
                fee_bid_wei=prepared.fee_bid_wei,
                outcome=AttemptOutcome.REVERTED,
                tx_hash=tx_hash,
                error=str(error),
            )
        except Exception as error:
            return AttemptRecord(
                index=index,
                fee_bid_wei=prepared.fee_bid_wei,
                outcome=AttemptOutcome.TRANSPORT_ERROR,
                tx_hash=tx_hash or getattr(error, "tx_hash", None),
                error=str(error),
            )

        outcome = AttemptOutcome.CONFIRMED_SUCCESS if status == 1 else AttemptOutcome.CONFIRMED_FAILURE
        return AttemptRecord(
            index=index,
            fee_bid_wei=prepared.fee_bid_wei,
            outcome=outcome,
            tx_hash=tx_hash,
            error=None if status == 1 else f"receipt status {status}",
        )

    @staticmethod
    def _report(
        session: RescueSession,
        *,
        shares: int,
        sent: bool,
        detail: str,
        tx_hash: str | None = None,
    ) -> SessionReport:
        return SessionReport(
            session_id=session.session_id,
            state=session.state,
            reason=session.trigger.reason,
            shares=shares,
            attempts=tuple(session.attempts),
            sent=sent,
            detail=detail,
            tx_hash=tx_hash,
        )
