from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from stablepay.container import build_container
from stablepay.core.errors import ErrorKind, PaymentProviderError, RuleExecutionError
from stablepay.models import Execution, ExecutionStatus, Rule, RuleStatus
from stablepay.safety.controller import SafetyController, SafetyPolicy
from stablepay.schema.rule import RouteQuote
from stablepay.services.execution_engine import ExecutionEngine, check_balance
from stablepay.services.payment_provider import MockPaymentProvider
from stablepay.services.task_queue import ExecutionJob
from stablepay.utils.datetime import as_utc


def five_dollar_quote(routing) -> RouteQuote:
    return RouteQuote(chain="base", fee_estimate_usd=5.0, eta_seconds=6, explanation="flat fee")


@pytest.fixture()
def provider() -> MockPaymentProvider:
    return MockPaymentProvider(default_balance="1000")


@pytest.fixture()
def make_engine(session_factory, provider, fixed_fx, clock):
    def _make(**overrides) -> ExecutionEngine:
        options = {
            "provider": provider,
            "safety": SafetyController(),
            "fx_oracle": fixed_fx,
            "clock": clock,
            "balance_buffer_usd": Decimal("5"),
        }
        options.update(overrides)
        return ExecutionEngine(session_factory, **options)

    return _make


async def _executions(session_factory, rule_id) -> list[Execution]:
    async with session_factory() as session:
        result = await session.execute(select(Execution).where(Execution.rule_id == rule_id))
        return list(result.scalars())


async def _rule(session_factory, rule_id) -> Rule:
    async with session_factory() as session:
        return await session.get(Rule, rule_id)


def test_balance_check_includes_fee_and_buffer():
    check_balance(Decimal("110"), Decimal("100"), Decimal("5"), Decimal("5"))
    with pytest.raises(RuleExecutionError) as excinfo:
        check_balance(Decimal("104.99"), Decimal("100"), Decimal("5"), Decimal("5"))
    assert excinfo.value.kind is ErrorKind.INSUFFICIENT_FUNDS


@pytest.mark.asyncio
async def test_successful_execution_records_transfer(make_engine, make_rule, bodies, provider, session_factory, clock):
    rule = await make_rule(bodies.schedule())
    engine = make_engine()

    result = await engine.process_job(ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-1"))

    assert result["status"] == "success"
    assert result["chain"] == "base"
    assert result["fee_usd"] == pytest.approx(0.061)
    assert provider.transfer_calls == 1
    [execution] = await _executions(session_factory, rule.id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.amount_usd == Decimal("50")
    assert execution.tx_hash == result["tx_hash"]
    assert as_utc((await _rule(session_factory, rule.id)).last_run_at) == clock()


@pytest.mark.asyncio
async def test_repeated_key_is_a_duplicate(make_engine, make_rule, bodies, provider, session_factory):
    rule = await make_rule(bodies.schedule())
    engine = make_engine()
    job = ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-dup")

    first = await engine.process_job(job)
    second = await engine.process_job(job)

    assert second == {"execution_id": first["execution_id"], "status": "duplicate"}
    assert provider.transfer_calls == 1
    assert len(await _executions(session_factory, rule.id)) == 1


@pytest.mark.asyncio
async def test_lost_insert_race_reports_duplicate(make_engine, make_rule, bodies, provider, session_factory):
    rule = await make_rule(bodies.schedule())
    engine = make_engine()
    job = ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-race")
    winner = await engine.process_job(job)

    original = engine._find_execution
    lookups = []

    async def stale_lookup(session, key):
        lookups.append(key)
        if len(lookups) == 1:
            return None
        return await original(session, key)

    engine._find_execution = stale_lookup
    loser = await engine.process_job(job)

    assert loser == {"execution_id": winner["execution_id"], "status": "duplicate"}
    assert provider.transfer_calls == 1
    assert len(await _executions(session_factory, rule.id)) == 1


@pytest.mark.asyncio
async def test_insufficient_balance_blocks_transfer_and_pauses_rule(
    make_engine, make_rule, bodies, session_factory, clock
):
    provider = MockPaymentProvider(default_balance="104.99")
    engine = make_engine(provider=provider, quoter=five_dollar_quote)
    body = bodies.schedule(amount={"value": "100", "currency": "USD"})
    rule = await make_rule(body)

    with pytest.raises(RuleExecutionError) as excinfo:
        await engine.process_job(ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-poor"))

    assert excinfo.value.kind is ErrorKind.INSUFFICIENT_FUNDS
    assert provider.transfer_calls == 0
    [execution] = await _executions(session_factory, rule.id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_kind == "INSUFFICIENT_FUNDS"
    paused = await _rule(session_factory, rule.id)
    assert paused.status == RuleStatus.PAUSED
    assert paused.pause_reason == "INSUFFICIENT_FUNDS"
    assert as_utc(paused.next_run_at) == clock() + timedelta(hours=24)


@pytest.mark.asyncio
async def test_failed_non_system_execution_is_not_resumed(make_engine, make_rule, bodies, session_factory):
    engine = make_engine(provider=MockPaymentProvider(default_balance="1"))
    rule = await make_rule(bodies.schedule())
    job = ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-once")

    with pytest.raises(RuleExecutionError):
        await engine.process_job(job)
    async with session_factory() as session:
        stored = await session.get(Rule, rule.id)
        stored.status = RuleStatus.ACTIVE
        await session.commit()

    again = await engine.process_job(job)
    assert again["status"] == "duplicate"


@pytest.mark.asyncio
async def test_system_error_before_transfer_resumes_same_row(make_engine, make_rule, bodies, provider, session_factory):
    engine = make_engine()
    rule = await make_rule(bodies.schedule())
    job = ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-flaky")
    provider.fail_next(PaymentProviderError("GATEWAY_TIMEOUT", "upstream timed out", retryable=True))

    with pytest.raises(PaymentProviderError):
        await engine.process_job(job)
    [failed] = await _executions(session_factory, rule.id)
    assert failed.error_kind == "SYSTEM_ERROR"

    result = await engine.process_job(job)

    assert result["status"] == "success"
    assert result["execution_id"] == str(failed.id)
    [execution] = await _executions(session_factory, rule.id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert (await _rule(session_factory, rule.id)).status == RuleStatus.ACTIVE


@pytest.mark.asyncio
async def test_policy_limit_blocks_without_pausing(make_engine, make_rule, bodies, provider, session_factory):
    engine = make_engine(safety=SafetyController(policy=SafetyPolicy(max_amount_usd=10)))
    rule = await make_rule(bodies.schedule())

    with pytest.raises(RuleExecutionError) as excinfo:
        await engine.process_job(ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-big"))

    assert excinfo.value.kind is ErrorKind.POLICY_BLOCKED
    assert provider.transfer_calls == 0
    assert (await _rule(session_factory, rule.id)).status == RuleStatus.ACTIVE



async def _processing_rows(session_factory, rule_id, count: int, *, updated_at, transfer_id: str | None = None) -> None:
    async with session_factory() as session:
        for _ in range(count):
            session.add(
                Execution(
                    rule_id=rule_id,
                    idempotency_key=f"stuck-{uuid.uuid4().hex}",
                    status=ExecutionStatus.PROCESSING,
                    transfer_id=transfer_id,
                    created_at=updated_at,
                    updated_at=updated_at,
                )
            )
        await session.commit()


@pytest.mark.asyncio
async def test_stale_and_settling_processing_rows_do_not_block(make_engine, make_rule, bodies, session_factory, clock):
    other = await make_rule(bodies.schedule())
    await _processing_rows(session_factory, other.id, 10, updated_at=clock() - timedelta(days=7))
    await _processing_rows(session_factory, other.id, 5, updated_at=clock() - timedelta(seconds=10), transfer_id="tr-1")
    await _processing_rows(session_factory, other.id, 9, updated_at=clock() - timedelta(seconds=10))
    rule = await make_rule(bodies.schedule())

    result = await make_engine().process_job(ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-after-crash"))

    assert result["status"] == "success"


@pytest.mark.asyncio
async def test_in_flight_processing_rows_block_new_executions(make_engine, make_rule, bodies, session_factory, clock, provider):
    other = await make_rule(bodies.schedule())
    await _processing_rows(session_factory, other.id, 10, updated_at=clock() - timedelta(seconds=10))
    rule = await make_rule(bodies.schedule())

    with pytest.raises(RuleExecutionError) as excinfo:
        await make_engine().process_job(ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-crowded"))

    assert excinfo.value.kind is ErrorKind.POLICY_BLOCKED
    assert "10/10" in str(excinfo.value)
    assert provider.transfer_calls == 0

@pytest.mark.asyncio
async def test_eur_amount_is_converted_for_limits(make_engine, make_rule, bodies, session_factory):
    engine = make_engine()
    rule = await make_rule(bodies.schedule(amount={"value": "100", "currency": "EUR"}))

    await engine.process_job(ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-eur"))

    [execution] = await _executions(session_factory, rule.id)
    assert execution.amount_usd == pytest.approx(Decimal("110"))


@pytest.mark.asyncio
async def test_unknown_contact_fails_with_not_found(make_engine, make_rule, bodies, provider):
    engine = make_engine()
    rule = await make_rule(bodies.schedule(destination={"type": "contact", "value": "Nobody"}))

    with pytest.raises(RuleExecutionError) as excinfo:
        await engine.process_job(ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-ghost"))

    assert excinfo.value.kind is ErrorKind.NOT_FOUND
    assert provider.transfer_calls == 0


@pytest.mark.asyncio
async def test_inactive_rule_is_not_executed(make_engine, make_rule, bodies, provider):
    engine = make_engine()
    rule = await make_rule(bodies.schedule(), status=RuleStatus.PAUSED)

    with pytest.raises(RuleExecutionError) as excinfo:
        await engine.process_job(ExecutionJob(rule_id=str(rule.id), idempotency_key="sched-paused"))

    assert excinfo.value.kind is ErrorKind.NOT_FOUND
    assert provider.transfer_calls == 0


@pytest.mark.asyncio
async def test_scheduled_rule_executes_inline_without_broker(session_factory, make_rule, make_contact, bodies):
    provider = MockPaymentProvider()
    container = build_container(session_factory=session_factory, use_broker=False, provider=provider)
    await make_contact("John", "0x" + "12" * 20)
    rule = await make_rule(bodies.schedule("* * * * *", destination={"type": "contact", "value": "John"}))

    outcome = await container.scheduler.tick()

    assert container.task_queue.mode == "fallback"
    assert outcome["enqueued"] == [str(rule.id)]
    assert container.task_queue.inline.stats.executed == 1
    [execution] = await _executions(session_factory, rule.id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.triggered_by == "schedule"
    assert execution.chain == "base"
    assert execution.fee_usd == pytest.approx(Decimal("0.061"))
    [transfer] = provider.transfers.values()
    assert transfer.destination_address == "0x" + "12" * 20
