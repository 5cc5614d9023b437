"""Shared pytest fixtures: per-test SQLite database, fake Redis, and service wiring."""

from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "test")

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from stablepay.db.base_class import Base
from stablepay.models import Contact, Rule, RuleStatus, RuleType
from stablepay.services.task_queue import JobDescriptor


class FakeClock:
    """Mutable datetime clock for services that take ``clock=``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeTicker:
    """Mutable epoch-seconds clock for breakers, oracles, and the DLQ."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingQueue:
    """Task queue stand-in that records execute-rule jobs instead of running them."""

    mode = "fallback"

    def __init__(self) -> None:
        self.jobs = []
        self.fail_with: Exception | None = None

    async def add_execute_rule_job(self, job, *, delay_seconds: float = 0, priority: int | None = None):
        if self.fail_with is not None:
            raise self.fail_with
        self.jobs.append(job)
        return JobDescriptor(
            id=job.idempotency_key, name="execute-rule", queue="execute-rule", mode=self.mode, status="queued"
        )


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def redis_conn():
    return fakeredis.FakeRedis()


@pytest.fixture()
def recording_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture()
def user_id() -> uuid.UUID:
    return uuid.uuid4()


def schedule_body(cron: str = "0 8 * * FRI", **overrides) -> dict:
    body = {
        "type": "schedule",
        "asset": "USDC",
        "amount": {"value": "50", "currency": "USD"},
        "destination": {"type": "address", "value": "0x" + "ab" * 20},
        "schedule": {"cron": cron, "timezone": "UTC"},
        "routing": {"mode": "cheapest", "allowed_chains": ["ethereum", "base", "arbitrum", "polygon"]},
    }
    body.update(overrides)
    return body


def condition_body(direction: str = "+%", magnitude: float = 1.0, window: str = "24h") -> dict:
    return {
        "type": "conditional",
        "amount": {"value": "25"},
        "destination": {"type": "address", "value": "0x" + "cd" * 20},
        "condition": {"metric": "EURUSD", "change": direction, "magnitude": magnitude, "window": window},
    }


@pytest_asyncio.fixture()
async def make_rule(session_factory, user_id):
    async def _make(body: dict, *, status: RuleStatus = RuleStatus.ACTIVE, owner: uuid.UUID | None = None, **fields):
        async with session_factory() as session:
            rule = Rule(
                user_id=owner or user_id,
                name=fields.pop("name", "test rule"),
                type=RuleType(body["type"]),
                status=status,
                body=body,
                **fields,
            )
            session.add(rule)
            await session.commit()
            return rule

    return _make


@pytest_asyncio.fixture()
async def make_contact(session_factory, user_id):
    async def _make(name: str, address: str) -> Contact:
        async with session_factory() as session:
            contact = Contact(user_id=user_id, name=name, address=address)
            session.add(contact)
            await session.commit()
            return contact

    return _make


@pytest.fixture()
def fixed_fx():
    """FX oracle stand-in returning one constant EURUSD rate."""

    class _Fx:
        def __init__(self, rate: float = 1.10) -> None:
            self.rate = rate

        async def get_rate(self, pair: str):
            return SimpleNamespace(pair=pair, rate=self.rate, source="fixed")

        async def convert_currency(self, amount: float, from_currency: str, to_currency: str) -> dict:
            return {"original_amount": amount, "converted_amount": amount * self.rate, "rate": self.rate}

    return _Fx()


@pytest.fixture()
def bodies() -> SimpleNamespace:
    return SimpleNamespace(schedule=schedule_body, condition=condition_body)


@pytest.fixture()
def clock() -> FakeClock:
    # Wednesday 2026-10-14 10:00 UTC
    return FakeClock(datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc))


@pytest.fixture()
def ticker() -> FakeTicker:
    return FakeTicker()
