"""
Order Execution Engine - quote, submit and verify swaps with provider fallback.

Every OrderIntent walks the status machine
``created -> quoting -> ready -> submitting -> verifying -> confirmed|failed``.
Providers are tried in their fixed registration order (primary first),
skipping any whose circuit breaker is open unless every breaker is open, in
which case only the least-recently-opened provider is tried.

Execution is serialized per owner: a second intent for an owner waits for
the first to finish, so one wallet never has two swaps in flight.

Once a transaction has been submitted, only an on-chain error (state
reverted) allows falling back to the next provider; a verification timeout
or a missing balance change ends the order.
"""

import asyncio
import inspect
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Optional

from config import settings
from interfaces.execution import BuiltTransaction, ExecutionProvider, Signer
from models.trading import (
    LAMPORTS_PER_SOL,
    SOL_DECIMALS,
    SOL_MINT,
    AttemptOutcome,
    ExecutionResult,
    OrderIntent,
    OrderResult,
    OrderSide,
    OrderStatus,
    ProviderFailure,
    Quote,
)
from services.activity_classifier import BalanceSnapshot, MalformedTransaction, snapshot_from_rpc_transaction
from services.exceptions import (
    AggregatedExecutionFailure,
    ProviderError,
    RpcError,
    TransportError,
    ValidationError,
    VerificationMismatch,
)
from services.failed_order_cache import FailedOrderCache, failed_order_cache
from services.latency_tracker import LatencyTracker, StageTimer, latency_tracker
from services.provider_health import ProviderCircuitBreaker, provider_health
from services.providers import jupiter_provider, raydium_provider
from services.resource_gateway import ResourceGateway, resource_gateway
from services.trade_store import TradeStore, trade_store
from utils.logger import get_logger
from utils.utcnow import utcnow
from utils.validation import validate_percentage, validate_positive_amount, validate_slippage_bps, validate_solana_address

logger = get_logger("order_executor")

_SOL = Decimal(LAMPORTS_PER_SOL)
_BPS = Decimal(10_000)


@dataclass
class AmountPlan:
    """What is being swapped, resolved against the owner's balances."""

    input_mint: str
    output_mint: str
    raw_amount: int
    ui_amount: Decimal
    input_decimals: int


class _SigningFailed(Exception):
    """The caller-supplied signer raised; not the provider's fault."""


class OrderExecutionEngine:
    def __init__(
        self,
        providers: Optional[list] = None,
        gateway: Optional[ResourceGateway] = None,
        health: Optional[ProviderCircuitBreaker] = None,
        failed_orders: Optional[FailedOrderCache] = None,
        store: Optional[TradeStore] = None,
        latency: Optional[LatencyTracker] = None,
        confirmation_poll_interval: Optional[float] = None,
        confirmation_max_polls: Optional[int] = None,
    ):
        self.providers: list[ExecutionProvider] = list(providers or [jupiter_provider, raydium_provider])
        if not self.providers:
            raise ValueError("at least one execution provider is required")
        self.gateway = gateway or resource_gateway
        self.health = health or provider_health
        self.failed_orders = failed_orders or failed_order_cache
        self.store = store
        self.latency = latency or latency_tracker
        self.poll_interval = (
            settings.CONFIRMATION_POLL_INTERVAL_SECONDS if confirmation_poll_interval is None else confirmation_poll_interval
        )
        self.max_polls = settings.CONFIRMATION_MAX_POLLS if confirmation_max_polls is None else confirmation_max_polls
        self._owner_locks: dict[str, asyncio.Lock] = {}
        self._owner_waiters: dict[str, int] = {}
        self._in_flight: dict[str, str] = {}  # owner_id -> order_id
        self._result_callbacks: list[Callable] = []
        self._stats = {"submitted": 0, "confirmed": 0, "failed": 0, "rejected_invalid": 0}

    # ==================== CALLBACKS ====================

    def add_result_callback(self, callback: Callable):
        """Register ``callback(owner_id, OrderResult)``; sync or async."""
        self._result_callbacks.append(callback)

    def remove_result_callback(self, callback: Callable):
        if callback in self._result_callbacks:
            self._result_callbacks.remove(callback)

    async def _emit_result(self, owner_id: str, result: OrderResult):
        for callback in list(self._result_callbacks):
            try:
                outcome = callback(owner_id, result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("Order result callback error", owner_id=owner_id, error=str(e), exc_info=True)

    # ==================== VALIDATION ====================

    def validate(self, intent: OrderIntent, signer: Optional[Signer]) -> None:
        """Raise ``ValidationError`` for input that must not reach a provider."""
        try:
            if not intent.owner_id:
                raise ValueError("owner_id is required")
            if intent.status != OrderStatus.CREATED:
                raise ValueError(f"order is already {intent.status.value}")
            if not isinstance(intent.side, OrderSide):
                intent.side = OrderSide(str(intent.side).lower())
            intent.token_address = validate_solana_address(intent.token_address, "token_address")
            if intent.token_address == SOL_MINT:
                raise ValueError("token_address must not be the native SOL mint")
            intent.amount = validate_positive_amount(intent.amount, "amount")
            if intent.amount_is_percent:
                validate_percentage(intent.amount, "amount percentage")
            intent.max_slippage_bps = validate_slippage_bps(intent.max_slippage_bps, settings.MAX_SLIPPAGE_BPS)
            if signer is None:
                raise ValueError("a signer is required")
            validate_solana_address(getattr(signer, "public_key", ""), "signer public key")
        except ValueError as e:
            raise ValidationError(str(e)) from e

    # ==================== PER-OWNER SERIALIZATION ====================

    @asynccontextmanager
    async def _owner_slot(self, owner_id: str):
        lock = self._owner_locks.get(owner_id)
        if lock is None:
            lock = self._owner_locks[owner_id] = asyncio.Lock()
        self._owner_waiters[owner_id] = self._owner_waiters.get(owner_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._owner_waiters[owner_id] -= 1
            if self._owner_waiters[owner_id] == 0:
                del self._owner_waiters[owner_id]
                self._owner_locks.pop(owner_id, None)

    # ==================== EXECUTION ====================

    async def execute(self, intent: OrderIntent, signer: Signer) -> ExecutionResult:
        """Run ``intent`` to a terminal state.

        Raises ``ValidationError`` before contacting anyone,
        ``VerificationMismatch`` when a landed buy had no effect, and
        ``AggregatedExecutionFailure`` when no provider confirmed.
        """
        try:
            self.validate(intent, signer)
        except ValidationError:
            self._stats["rejected_invalid"] += 1
            if intent.status == OrderStatus.CREATED:
                intent.transition(OrderStatus.FAILED)
            raise

        async with self._owner_slot(intent.owner_id):
            self._in_flight[intent.owner_id] = intent.id
            self._stats["submitted"] += 1
            try:
                result = await self._execute_locked(intent, signer)
            except (AggregatedExecutionFailure, VerificationMismatch, ValidationError) as e:
                self._stats["failed"] += 1
                if not intent.is_terminal:
                    intent.transition(OrderStatus.FAILED)
                if not isinstance(e, ValidationError):
                    self.failed_orders.record_failure(intent, reason=str(e))
                raise
            finally:
                self._in_flight.pop(intent.owner_id, None)
            self._stats["confirmed"] += 1
            self.failed_orders.clear(intent.owner_id)
            return result

    async def _execute_locked(self, intent: OrderIntent, signer: Signer) -> ExecutionResult:
        plan = await self._resolve_amount(intent, signer.public_key)

        provider_ids = [p.provider_id for p in self.providers]
        all_open = all(self.health.is_open(pid) for pid in provider_ids)
        forced = self.health.least_recently_opened(provider_ids) if all_open else None
        if forced:
            logger.warning("All provider breakers open, degrading to one attempt", provider=forced, order_id=intent.id)

        failures: list[ProviderFailure] = []
        for provider in self.providers:
            pid = provider.provider_id
            if forced is not None and pid != forced:
                failures.append(ProviderFailure(pid, "breaker", "Circuit breaker open"))
                continue
            if forced is None and self.health.is_open(pid):
                logger.info("Skipping provider with open breaker", provider=pid, order_id=intent.id)
                failures.append(ProviderFailure(pid, "breaker", "Circuit breaker open"))
                continue

            if intent.status != OrderStatus.QUOTING:
                intent.transition(OrderStatus.QUOTING)
            try:
                result = await self._attempt(intent, provider, signer, plan)
            except ProviderError as e:
                failures.append(e.as_failure())
                await self._record_provider_failure(pid, e.reason)
                logger.warning(
                    "Provider attempt failed",
                    order_id=intent.id,
                    provider=pid,
                    stage=e.stage,
                    reason=e.reason,
                    terminal=e.terminal,
                )
                if e.terminal:
                    break
                continue
            except VerificationMismatch as e:
                await self._record_provider_failure(pid, e.reason)
                logger.error("Verification mismatch", order_id=intent.id, provider=pid, signature=e.signature)
                raise
            except _SigningFailed as e:
                failures.append(ProviderFailure(pid, "sign", f"Signing failed: {e}"))
                break
            self.health.record_success(pid)
            return result

        raise AggregatedExecutionFailure(failures)

    async def _record_provider_failure(self, provider_id: str, reason: str):
        trip = self.health.record_failure(provider_id, reason)
        if trip is not None:
            await self.health.save_trip_event(trip)

    async def _resolve_amount(self, intent: OrderIntent, owner_public_key: str) -> AmountPlan:
        """Turn the intent's amount (or percent of balance) into raw input units."""
        try:
            if intent.side == OrderSide.BUY:
                ui_amount = intent.amount
                if intent.amount_is_percent:
                    balance = await self.gateway.get_sol_balance(owner_public_key)
                    ui_amount = (balance * intent.amount / 100).quantize(Decimal(1).scaleb(-SOL_DECIMALS), ROUND_DOWN)
                raw = int((ui_amount * _SOL).to_integral_value(ROUND_DOWN))
                plan = AmountPlan(SOL_MINT, intent.token_address, raw, ui_amount, SOL_DECIMALS)
            else:
                balance = await self.gateway.get_token_balance(owner_public_key, intent.token_address)
                if not balance.raw_amount:
                    raise ValidationError("No token balance to sell")
                decimals = balance.decimals
                if decimals is None:
                    # Token accounts parsed without decimals; ask the mint.
                    decimals = await self.gateway.get_token_decimals(intent.token_address)
                if intent.amount_is_percent:
                    raw = int((Decimal(balance.raw_amount) * intent.amount / 100).to_integral_value(ROUND_DOWN))
                else:
                    raw = int(intent.amount.scaleb(decimals).to_integral_value(ROUND_DOWN))
                if raw > balance.raw_amount:
                    raise ValidationError(
                        f"Insufficient token balance: have {Decimal(balance.raw_amount).scaleb(-decimals)}, "
                        f"asked to sell {intent.amount}"
                    )
                plan = AmountPlan(intent.token_address, SOL_MINT, raw, Decimal(raw).scaleb(-decimals), decimals)
        except (TransportError, RpcError) as e:
            raise AggregatedExecutionFailure([ProviderFailure("ledger", "balance", f"Could not read balance: {e}")])
        if plan.raw_amount <= 0:
            raise ValidationError("Amount is too small to trade")
        return plan

    # ==================== SINGLE ATTEMPT ====================

    def _check_quote(self, quote: Quote, intent: OrderIntent):
        impact_bps = quote.price_impact_bps
        if impact_bps > intent.max_slippage_bps:
            raise ProviderError(
                quote.provider_id,
                "quote",
                f"Price impact {impact_bps / 100:.2f}% exceeds slippage bound {intent.max_slippage_bps / 100:.2f}%",
            )
        ceiling = settings.MAX_PRICE_IMPACT_BPS
        if ceiling is not None and impact_bps > ceiling:
            raise ProviderError(
                quote.provider_id, "quote", f"Price impact {impact_bps / 100:.2f}% exceeds ceiling {ceiling / 100:.2f}%"
            )

    async def _sign(self, signer: Signer, transaction: bytes) -> bytes:
        try:
            signed = signer.sign(transaction)
            if inspect.isawaitable(signed):
                signed = await signed
        except Exception as e:
            raise _SigningFailed(str(e)) from e
        if not isinstance(signed, (bytes, bytearray)) or not signed:
            raise _SigningFailed("signer returned no bytes")
        return bytes(signed)

    async def _attempt(
        self, intent: OrderIntent, provider: ExecutionProvider, signer: Signer, plan: AmountPlan
    ) -> ExecutionResult:
        pid = provider.provider_id
        # Covers the provider's own HTTP retries.
        timeout = settings.PROVIDER_TIMEOUT_SECONDS * (settings.PROVIDER_MAX_RETRIES + 1)
        attempt = intent.open_attempt(pid)
        timer = StageTimer()
        quote: Optional[Quote] = None
        try:
            requotes = 0
            while True:
                timer.start_stage("quote")
                quote = await asyncio.wait_for(
                    provider.get_quote(plan.input_mint, plan.output_mint, plan.raw_amount, intent.max_slippage_bps),
                    timeout,
                )
                self._check_quote(quote, intent)
                intent.transition(OrderStatus.READY)
                timer.start_stage("build")
                built: BuiltTransaction = await asyncio.wait_for(
                    provider.build_transaction(quote, signer.public_key), timeout
                )
                if not built.transactions:
                    raise ProviderError(pid, "build", "no transaction returned")
                if quote.age_seconds() <= settings.QUOTE_TTL_SECONDS:
                    break
                if requotes >= settings.MAX_REQUOTES:
                    raise ProviderError(pid, "quote", "Quote expired before submission")
                requotes += 1
                logger.info("Quote expired before submission, re-quoting", order_id=intent.id, provider=pid)
                intent.transition(OrderStatus.QUOTING)

            intent.transition(OrderStatus.SUBMITTING)
            timer.start_stage("sign")
            signed = [await self._sign(signer, tx) for tx in built.transactions]

            timer.start_stage("submit")
            submitted_at = utcnow()
            signature = None
            for payload in signed:
                signature = await self._submit(provider, payload, timeout)
            intent.update_attempt(replace(attempt, quote=quote, submitted_at=submitted_at, signature=signature))
            attempt = intent.attempts[-1]

            intent.transition(OrderStatus.VERIFYING)
            timer.start_stage("verify")
            snapshot = await self._verify(intent, provider, signature, signer.public_key)
        except _SigningFailed as e:
            self._close(intent, pid, AttemptOutcome.REJECTED, timer, quote=quote, reason=f"Signing failed: {e}", stage="sign")
            raise
        except VerificationMismatch as e:
            self._close(intent, pid, AttemptOutcome.REJECTED, timer, quote=quote, reason=e.reason, stage="verify")
            raise
        except ProviderError as e:
            outcome = AttemptOutcome.TIMED_OUT if e.timed_out else AttemptOutcome.REJECTED
            self._close(intent, pid, outcome, timer, quote=quote, reason=e.reason, stage=e.stage)
            raise
        except asyncio.TimeoutError:
            stage = timer.current_stage or "quote"
            reason = f"{stage} timed out after {timeout:.0f}s"
            # A submission that timed out may still land.
            landed_unknown = stage == "submit"
            outcome = AttemptOutcome.TIMED_OUT if landed_unknown else AttemptOutcome.REJECTED
            self._close(intent, pid, outcome, timer, quote=quote, reason=reason, stage=stage)
            raise ProviderError(pid, stage, reason, terminal=landed_unknown, timed_out=landed_unknown)
        except Exception as e:
            stage = timer.current_stage or "quote"
            logger.error("Unexpected provider error", provider=pid, stage=stage, error=str(e), exc_info=True)
            self._close(intent, pid, AttemptOutcome.REJECTED, timer, quote=quote, reason=str(e), stage=stage)
            raise ProviderError(pid, stage, str(e) or type(e).__name__) from e

        final = self._close(intent, pid, AttemptOutcome.CONFIRMED, timer, quote=quote)
        intent.transition(OrderStatus.CONFIRMED)
        result = self._build_result(intent, pid, quote, signature, snapshot, built, plan)
        result.attempts = list(intent.attempts)
        logger.info(
            "Order confirmed",
            order_id=intent.id,
            owner_id=intent.owner_id,
            provider=pid,
            signature=final.signature,
            side=intent.side.value,
        )
        return result

    def _close(self, intent: OrderIntent, pid: str, outcome: AttemptOutcome, timer: StageTimer, **changes):
        timings = timer.finish()
        final = intent.close_attempt(outcome, stage_timings_ms=timings, **changes)
        self.latency.record(pid, timings, outcome.value)
        return final

    async def _submit(self, provider: ExecutionProvider, payload: bytes, timeout: float) -> str:
        pid = provider.provider_id
        try:
            signature = await asyncio.wait_for(self.gateway.send_raw_transaction(payload), timeout)
        except RpcError as e:
            raise ProviderError(pid, "submit", provider.describe_error(e.rpc_message)) from e
        except TransportError as e:
            raise ProviderError(pid, "submit", f"Could not reach the network: {e}") from e
        if not signature:
            raise ProviderError(pid, "submit", "network returned no signature")
        return signature

    async def _verify(self, intent: OrderIntent, provider: ExecutionProvider, signature: str, owner: str) -> Optional[BalanceSnapshot]:
        pid = provider.provider_id
        confirmed = False
        for _ in range(self.max_polls):
            try:
                status = await self.gateway.get_signature_status(signature)
            except (TransportError, RpcError) as e:
                logger.debug("Confirmation poll failed", signature=signature, error=str(e))
                status = None
            if status:
                if status.get("err") is not None:
                    raise ProviderError(pid, "verify", provider.describe_error(json.dumps(status["err"])))
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    confirmed = True
                    break
            await asyncio.sleep(self.poll_interval)
        if not confirmed:
            raise ProviderError(
                pid, "verify", f"Transaction {signature} not confirmed after {self.max_polls} polls", terminal=True, timed_out=True
            )

        transaction = None
        for _ in range(3):
            try:
                transaction = await self.gateway.get_transaction(signature)
            except (TransportError, RpcError) as e:
                logger.debug("getTransaction failed", signature=signature, error=str(e))
            if transaction:
                break
            await asyncio.sleep(self.poll_interval)

        if not transaction:
            if intent.side == OrderSide.BUY:
                raise VerificationMismatch(pid, signature, "confirmed transaction could not be fetched to verify balances")
            return None

        meta = transaction.get("meta") or {}
        if meta.get("err") is not None:
            raise ProviderError(pid, "verify", provider.describe_error(json.dumps(meta["err"])))

        try:
            snapshot = snapshot_from_rpc_transaction(transaction, owner, signature)
        except MalformedTransaction as e:
            if intent.side == OrderSide.BUY:
                raise VerificationMismatch(pid, signature, f"unreadable balances: {e}")
            return None
        if intent.side == OrderSide.BUY and snapshot.delta_for(intent.token_address) <= 0:
            raise VerificationMismatch(pid, signature, "Token balance did not increase")
        return snapshot

    # ==================== RESULT ====================

    def _build_result(
        self,
        intent: OrderIntent,
        pid: str,
        quote: Quote,
        signature: str,
        snapshot: Optional[BalanceSnapshot],
        built: BuiltTransaction,
        plan: AmountPlan,
    ) -> ExecutionResult:
        token_delta = snapshot.delta_for(intent.token_address) if snapshot else Decimal(0)
        sol_delta = snapshot.delta_for(SOL_MINT) if snapshot else Decimal(0)

        if intent.side == OrderSide.BUY:
            input_amount = -sol_delta if sol_delta < 0 else plan.ui_amount
            output_amount = token_delta
            sol_value, token_value = input_amount, output_amount
        else:
            input_amount = -token_delta if token_delta < 0 else plan.ui_amount
            output_amount = sol_delta if sol_delta > 0 else Decimal(quote.out_amount) / _SOL
            sol_value, token_value = output_amount, input_amount

        realized_price = (sol_value / token_value) if token_value > 0 else None
        platform_fee = (sol_value * settings.PLATFORM_FEE_BPS / _BPS).quantize(Decimal(1).scaleb(-SOL_DECIMALS))
        if snapshot and snapshot.fee_lamports:
            network_fee = Decimal(snapshot.fee_lamports) / _SOL
        else:
            network_fee = Decimal(settings.NETWORK_BASE_FEE_LAMPORTS + built.prioritization_fee_lamports) / _SOL

        warnings = []
        if quote.price_impact_bps > settings.PRICE_IMPACT_WARN_BPS:
            warnings.append(f"High price impact: {quote.price_impact_pct:.2f}%")

        return ExecutionResult(
            order_id=intent.id,
            owner_id=intent.owner_id,
            provider=pid,
            signature=signature,
            side=intent.side,
            token_address=intent.token_address,
            input_amount=input_amount,
            output_amount=output_amount,
            realized_price=realized_price,
            platform_fee=platform_fee,
            network_fee=network_fee,
            price_impact_pct=quote.price_impact_pct,
            warnings=warnings,
        )

    # ==================== CALLER SURFACE ====================

    async def submit_order(self, intent: OrderIntent, signer: Signer) -> OrderResult:
        """Execute and report; failures come back as a structured ``OrderResult``."""
        try:
            execution = await self.execute(intent, signer)
            result = OrderResult(success=True, order_id=intent.id, owner_id=intent.owner_id, result=execution)
        except ValidationError as e:
            result = OrderResult(
                success=False,
                order_id=intent.id,
                owner_id=intent.owner_id,
                error_type="validation_error",
                error_message=str(e),
            )
        except VerificationMismatch as e:
            result = OrderResult(
                success=False,
                order_id=intent.id,
                owner_id=intent.owner_id,
                error_type="verification_mismatch",
                error_message=str(e),
                failures=[e.as_failure()],
                retry_available=self.failed_orders.has_recent_failed_order(intent.owner_id),
            )
        except AggregatedExecutionFailure as e:
            result = OrderResult(
                success=False,
                order_id=intent.id,
                owner_id=intent.owner_id,
                error_type="aggregated_execution_failure",
                error_message=str(e),
                failures=list(e.failures),
                retry_available=self.failed_orders.has_recent_failed_order(intent.owner_id),
            )

        if self.store is not None and intent.attempts:
            await self.store.record_order(intent, result)
        await self._emit_result(intent.owner_id, result)
        return result

    async def retry_last_failed_order(self, owner_id: str, signer: Signer) -> Optional[OrderResult]:
        """Re-run the owner's last failed order as a fresh intent; None if nothing to retry."""
        intent = self.failed_orders.take_for_retry(owner_id)
        if intent is None:
            return None
        logger.info("Retrying last failed order", owner_id=owner_id, token=intent.token_address, order_id=intent.id)
        return await self.submit_order(intent, signer)

    def get_last_failed_order(self, owner_id: str):
        return self.failed_orders.get_last_failed_order(owner_id)

    def has_recent_failed_order(self, owner_id: str) -> bool:
        return self.failed_orders.has_recent_failed_order(owner_id)

    def get_status(self) -> dict:
        return {
            "providers": [p.provider_id for p in self.providers],
            "in_flight": dict(self._in_flight),
            "queued_owners": {owner: max(0, n - 1) for owner, n in self._owner_waiters.items()},
            "stats": dict(self._stats),
            "health": self.health.get_status(),
            "latency": self.latency.get_stats(),
        }


order_executor = OrderExecutionEngine(store=trade_store)
