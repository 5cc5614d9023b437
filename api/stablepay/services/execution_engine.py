"""Rule execution pipeline run by the worker for every execute-rule job.

Invariants:
- At most one Execution row exists per idempotency key; a repeated key is a
  no-op ``duplicate`` unless the earlier attempt failed with a system error
  before any transfer was submitted, in which case that same row is resumed.
- Policy and balance checks run before any provider call that moves funds.
- Failures are recorded on the Execution (and the Rule for auto-pause kinds)
  and then re-raised so the queue layer can apply retry and DLQ policy.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stablepay.core.config import settings
from stablepay.core.errors import ErrorKind, RuleExecutionError, classify_error
from stablepay.models import Contact, Execution, ExecutionStatus, Rule, RuleStatus, Wallet
from stablepay.oracles.fx import FxOracle
from stablepay.safety.controller import CIRCLE_API, SafetyController
from stablepay.schema.rule import RouteQuote, RuleBody, Routing
from stablepay.services.audit_log import AuditLogger, Severity
from stablepay.services.payment_provider import PaymentProvider
from stablepay.services.router import quote_cheapest
from stablepay.services.task_queue import ExecutionJob
from stablepay.utils.datetime import start_of_day, utcnow

logger = logging.getLogger("stablepay.services.execution_engine")

Quoter = Callable[[Routing], RouteQuote]

AUTO_PAUSE_KINDS = (ErrorKind.INSUFFICIENT_FUNDS, ErrorKind.RATE_LIMITED)


def _truncate_error(value: str | None, limit: int = 500) -> str | None:
    if not value:
        return None
    return value[:limit]


def check_balance(balance: Decimal, amount: Decimal, fee: Decimal, buffer: Decimal) -> None:
    """Require ``balance >= amount + fee + buffer``."""
    required = amount + fee + buffer
    if balance < required:
        raise RuleExecutionError(
            ErrorKind.INSUFFICIENT_FUNDS,
            f"Insufficient balance: {balance} available, {required} required "
            f"(amount {amount} + fee {fee} + buffer {buffer})",
        )


class ExecutionEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        provider: PaymentProvider,
        safety: SafetyController,
        fx_oracle: FxOracle,
        audit: AuditLogger | None = None,
        quoter: Quoter = quote_cheapest,
        clock: Callable[[], datetime] = utcnow,
        balance_buffer_usd: Decimal | None = None,
        in_flight_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._safety = safety
        self._fx = fx_oracle
        self._audit = audit or AuditLogger()
        self._quoter = quoter
        self._clock = clock
        self._buffer = Decimal(str(settings.balance_safety_buffer_usd if balance_buffer_usd is None else balance_buffer_usd))
        self._in_flight = timedelta(seconds=settings.job_timeout_seconds if in_flight_seconds is None else in_flight_seconds)
        self._pause_hours = {
            ErrorKind.INSUFFICIENT_FUNDS: settings.pause_insufficient_funds_hours,
            ErrorKind.RATE_LIMITED: settings.pause_rate_limited_hours,
        }

    async def process_job(self, job: ExecutionJob) -> dict[str, Any]:
        """Run one execute-rule job end to end."""
        async with self._session_factory() as session:
            claimed = await self._claim(session, job)
            if isinstance(claimed, dict):
                return claimed
            execution = claimed
            try:
                return await self._execute(session, job, execution)
            except Exception as exc:
                await session.rollback()
                await self._record_failure(job, exc)
                raise

    async def _claim(self, session: AsyncSession, job: ExecutionJob) -> Execution | dict[str, Any]:
        """Create the Execution for this key, resume a retryable one, or report a duplicate."""
        existing = await self._find_execution(session, job.idempotency_key)
        if existing is not None:
            if not self._resumable(existing):
                logger.info("Duplicate execution for key %s (%s)", job.idempotency_key, existing.status.value)
                return {"execution_id": str(existing.id), "status": "duplicate"}
            result = await session.execute(
                update(Execution)
                .where(Execution.id == existing.id, Execution.status == ExecutionStatus.FAILED)
                .values(status=ExecutionStatus.PROCESSING, error_kind=None, error_message=None)
            )
            await session.commit()
            if result.rowcount != 1:
                return {"execution_id": str(existing.id), "status": "duplicate"}
            await session.refresh(existing)
            logger.info("Resuming execution %s for key %s", existing.id, job.idempotency_key)
            return existing

        rule = await self._load_active_rule(session, job.rule_id)
        execution = Execution(
            rule_id=rule.id,
            status=ExecutionStatus.PROCESSING,
            idempotency_key=job.idempotency_key,
            triggered_by=job.triggered_by,
        )
        session.add(execution)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            winner = await self._find_execution(session, job.idempotency_key)
            logger.info("Lost idempotency race for key %s", job.idempotency_key)
            return {"execution_id": str(winner.id) if winner else None, "status": "duplicate"}
        return execution

    @staticmethod
    def _resumable(execution: Execution) -> bool:
        return (
            execution.status is ExecutionStatus.FAILED
            and execution.error_kind == ErrorKind.SYSTEM_ERROR.value
            and not execution.tx_hash
            and not execution.transfer_id
        )

    async def find_execution(self, key: str) -> Execution | None:
        async with self._session_factory() as session:
            return await self._find_execution(session, key)

    async def _find_execution(self, session: AsyncSession, key: str) -> Execution | None:
        result = await session.execute(select(Execution).where(Execution.idempotency_key == key))
        return result.scalar_one_or_none()

    async def _load_active_rule(self, session: AsyncSession, rule_id: str) -> Rule:
        try:
            key = uuid.UUID(str(rule_id))
        except ValueError:
            raise RuleExecutionError(ErrorKind.NOT_FOUND, f"Rule {rule_id} not found or inactive") from None
        rule = await session.get(Rule, key)
        if rule is None or rule.status is not RuleStatus.ACTIVE:
            raise RuleExecutionError(ErrorKind.NOT_FOUND, f"Rule {rule_id} not found or inactive")
        return rule

    async def _execute(self, session: AsyncSession, job: ExecutionJob, execution: Execution) -> dict[str, Any]:
        rule = await self._load_active_rule(session, job.rule_id)
        try:
            body = RuleBody.model_validate(rule.body)
        except ValidationError as exc:
            raise RuleExecutionError(
                ErrorKind.POLICY_BLOCKED, f"ValidationError: rule body is invalid ({exc.error_count()} errors)"
            ) from exc

        amount = body.amount.value
        amount_usd = await self._amount_usd(body)
        execution.amount_usd = amount_usd
        requires_approval = await self._enforce_limits(session, rule, body, execution, amount_usd)

        quote = self._quoter(body.routing)
        fee = Decimal(str(quote.fee_estimate_usd))
        execution.chain = quote.chain
        execution.fee_usd = fee
        await session.commit()

        wallet = await self._resolve_wallet(session, rule.user_id, quote.chain)
        execution.wallet_id = str(wallet.id)
        destination = await self._resolve_destination(session, rule.user_id, body)
        if not self._provider.validate_address(destination, quote.chain):
            raise RuleExecutionError(ErrorKind.INVALID_ADDRESS, f"Invalid address {destination} for {quote.chain}")

        refreshed = await self._safety.execute_with_protection(
            CIRCLE_API, lambda: self._provider.refresh_wallet_balance(wallet.provider_wallet_id)
        )
        balance = Decimal(str(refreshed.balances.get(body.asset, 0)))
        check_balance(balance, amount, fee, self._buffer)

        if not self._safety.is_system_safe():
            raise RuleExecutionError(ErrorKind.SYSTEM_ERROR, "System is not safe for transfers; critical services unavailable")

        transfer = await self._safety.execute_with_protection(
            CIRCLE_API,
            lambda: self._provider.transfer_usdc(
                wallet_id=wallet.provider_wallet_id,
                destination_address=destination,
                amount=amount,
                chain=quote.chain,
                idempotency_key=f"{job.idempotency_key}-transfer",
                asset=body.asset,
            ),
        )

        now = self._clock()
        execution.transfer_id = transfer.id
        execution.tx_hash = transfer.tx_hash
        if transfer.status == "complete":
            execution.status = ExecutionStatus.COMPLETED
            execution.completed_at = now
        else:
            execution.status = ExecutionStatus.PROCESSING
        rule.last_run_at = now
        await session.commit()

        self._audit.log_event(
            "transfer_submitted",
            category="EXECUTION",
            severity=Severity.HIGH if requires_approval else Severity.MEDIUM,
            user_id=str(rule.user_id),
            resource="execution",
            resource_id=str(execution.id),
            amount=str(amount),
            asset=body.asset,
            chain=quote.chain,
            transfer_status=transfer.status,
        )
        return {
            "execution_id": str(execution.id),
            "status": "success" if transfer.status == "complete" else "pending",
            "transfer_id": transfer.id,
            "tx_hash": transfer.tx_hash,
            "chain": quote.chain,
            "fee_usd": float(fee),
            "requires_approval": requires_approval,
        }

    async def _amount_usd(self, body: RuleBody) -> Decimal:
        if body.amount.currency == "USD":
            return body.amount.value
        converted = await self._fx.convert_currency(float(body.amount.value), body.amount.currency, "USD")
        return Decimal(str(round(converted["converted_amount"], 6)))

    async def _enforce_limits(
        self, session: AsyncSession, rule: Rule, body: RuleBody, execution: Execution, amount_usd: Decimal
    ) -> bool:
        """Apply the global safety policy and the rule's own daily cap; return the approval flag."""
        now = self._clock()
        day_start = start_of_day(now)
        # Rows past the job timeout belong to dead work-horses; rows with a
        # transfer id are settling at the provider.
        concurrent = await session.scalar(
            select(func.count(Execution.id)).where(
                Execution.status == ExecutionStatus.PROCESSING,
                Execution.transfer_id.is_(None),
                Execution.updated_at >= now - self._in_flight,
                Execution.id != execution.id,
            )
        )
        daily = await session.scalar(
            select(func.count(Execution.id))
            .join(Rule, Rule.id == Execution.rule_id)
            .where(Rule.user_id == rule.user_id, Execution.created_at >= day_start, Execution.id != execution.id)
        )
        verdict = self._safety.validate_execution(
            amount_usd=float(amount_usd),
            concurrent_executions=int(concurrent or 0),
            daily_executions=int(daily or 0),
        )
        if not verdict.allowed:
            raise RuleExecutionError(ErrorKind.POLICY_BLOCKED, verdict.reason or "Execution blocked by safety policy")

        limits = body.limits
        if limits.daily_max_usd is not None:
            spent = await session.scalar(
                select(func.coalesce(func.sum(Execution.amount_usd), 0)).where(
                    Execution.rule_id == rule.id,
                    Execution.created_at >= day_start,
                    Execution.status != ExecutionStatus.FAILED,
                    Execution.id != execution.id,
                )
            )
            if Decimal(str(spent or 0)) + amount_usd > limits.daily_max_usd:
                raise RuleExecutionError(
                    ErrorKind.POLICY_BLOCKED,
                    f"Daily limit of ${limits.daily_max_usd} for rule {rule.id} would be exceeded",
                )

        requires_approval = verdict.requires_approval
        if limits.require_confirm_over_usd is not None and amount_usd > limits.require_confirm_over_usd:
            requires_approval = True
        return requires_approval

    async def _resolve_wallet(self, session: AsyncSession, user_id: uuid.UUID, chain: str) -> Wallet:
        wallet = await self._find_wallet(session, user_id, chain)
        if wallet is not None:
            return wallet
        created = await self._safety.execute_with_protection(
            CIRCLE_API, lambda: self._provider.create_wallet(str(user_id), chain)
        )
        wallet = Wallet(user_id=user_id, chain=chain, provider_wallet_id=created.id, address=created.address)
        session.add(wallet)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            wallet = await self._find_wallet(session, user_id, chain)
            if wallet is None:
                raise
        return wallet

    async def _find_wallet(self, session: AsyncSession, user_id: uuid.UUID, chain: str) -> Wallet | None:
        result = await session.execute(select(Wallet).where(Wallet.user_id == user_id, Wallet.chain == chain))
        return result.scalar_one_or_none()

    async def _resolve_destination(self, session: AsyncSession, user_id: uuid.UUID, body: RuleBody) -> str:
        if body.destination.type == "address":
            return body.destination.value
        result = await session.execute(
            select(Contact).where(Contact.user_id == user_id, Contact.name == body.destination.value)
        )
        contact = result.scalar_one_or_none()
        if contact is None:
            raise RuleExecutionError(ErrorKind.NOT_FOUND, f"Contact '{body.destination.value}' not found")
        return contact.address

    async def _record_failure(self, job: ExecutionJob, exc: BaseException) -> None:
        kind = classify_error(exc)
        message = _truncate_error(str(exc))
        now = self._clock()
        async with self._session_factory() as session:
            execution = await self._find_execution(session, job.idempotency_key)
            if execution is not None:
                execution.status = ExecutionStatus.FAILED
                execution.error_kind = kind.value
                execution.error_message = message
            paused_until: datetime | None = None
            if kind in AUTO_PAUSE_KINDS:
                rule = await session.get(Rule, uuid.UUID(str(job.rule_id)))
                if rule is not None and rule.status is RuleStatus.ACTIVE:
                    paused_until = now + timedelta(hours=self._pause_hours[kind])
                    rule.status = RuleStatus.PAUSED
                    rule.pause_reason = kind.value
                    rule.next_run_at = paused_until
            await session.commit()

        logger.warning("Execution for key %s failed (%s): %s", job.idempotency_key, kind.value, message)
        self._audit.log_event(
            "execution_failed",
            category="EXECUTION",
            severity=Severity.HIGH if paused_until else Severity.MEDIUM,
            resource="rule",
            resource_id=job.rule_id,
            idempotency_key=job.idempotency_key,
            error_kind=kind.value,
            error=message,
            paused_until=paused_until,
        )
