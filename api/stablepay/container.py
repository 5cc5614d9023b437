"""Process-scoped composition root.

Every service is constructed here and wired by constructor arguments; nothing
else in the package holds a module-level service instance. Tests build their
own containers with ``build_container`` and install them with ``set_container``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from redis import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stablepay.core.config import settings
from stablepay.db.session import async_session
from stablepay.oracles import FxOracle, GasOracle
from stablepay.safety.controller import SafetyController
from stablepay.services.audit_log import AuditLogger
from stablepay.services.condition_checker import ConditionChecker
from stablepay.services.cron_scheduler import CronScheduler
from stablepay.services.dlq import DeadLetterQueue
from stablepay.services.execution_engine import ExecutionEngine
from stablepay.services.fx_state import RedisFxState
from stablepay.services.monitoring import MonitoringService
from stablepay.services.payment_provider import MockPaymentProvider, PaymentProvider
from stablepay.services.task_queue import (
    CONDITION_CHECK_QUEUE,
    EXECUTE_RULE_QUEUE,
    BrokerDispatcher,
    InlineDispatcher,
    TaskQueue,
)

logger = logging.getLogger("stablepay.container")


@dataclass
class ServiceContainer:
    session_factory: async_sessionmaker[AsyncSession]
    safety: SafetyController
    audit: AuditLogger
    fx_oracle: FxOracle
    gas_oracle: GasOracle
    provider: PaymentProvider
    task_queue: TaskQueue
    engine: ExecutionEngine
    condition_checker: ConditionChecker
    scheduler: CronScheduler
    monitoring: MonitoringService

    @property
    def dlq(self) -> DeadLetterQueue | None:
        return self.task_queue.dlq


def build_container(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis_connection: Redis | None = None,
    use_broker: bool = True,
    provider: PaymentProvider | None = None,
    safety: SafetyController | None = None,
) -> ServiceContainer:
    """Construct and wire every engine service.

    With ``use_broker`` the queue gets an RQ dispatcher and a Redis-backed DLQ,
    but it still starts inline until ``TaskQueue.bootstrap`` or ``probe`` sees
    the broker respond.
    """
    session_factory = session_factory or async_session
    safety = safety or SafetyController()
    audit = AuditLogger()
    fx_oracle = FxOracle(safety)
    gas_oracle = GasOracle(safety)
    provider = provider or MockPaymentProvider()

    broker: BrokerDispatcher | None = None
    dlq: DeadLetterQueue | None = None
    fx_state: RedisFxState | None = None
    if use_broker:
        connection = redis_connection or Redis.from_url(settings.redis_url)
        broker = BrokerDispatcher(connection)
        dlq = DeadLetterQueue(connection)
        fx_state = RedisFxState(connection)

    inline = InlineDispatcher()
    task_queue = TaskQueue(broker=broker, inline=inline, dlq=dlq)
    engine = ExecutionEngine(session_factory, provider=provider, safety=safety, fx_oracle=fx_oracle, audit=audit)
    # The simulated walk keeps its own baseline; only a real feed replaces it.
    condition_checker = ConditionChecker(
        session_factory,
        task_queue,
        fx_oracle=fx_oracle if settings.fx_oracle_url else None,
        shared_state=fx_state,
    )
    scheduler = CronScheduler(session_factory, task_queue, audit=audit)
    monitoring = MonitoringService(session_factory, safety, task_queue)

    inline.register(EXECUTE_RULE_QUEUE, engine.process_job)
    inline.register(CONDITION_CHECK_QUEUE, condition_checker.check_all_conditions)

    return ServiceContainer(
        session_factory=session_factory,
        safety=safety,
        audit=audit,
        fx_oracle=fx_oracle,
        gas_oracle=gas_oracle,
        provider=provider,
        task_queue=task_queue,
        engine=engine,
        condition_checker=condition_checker,
        scheduler=scheduler,
        monitoring=monitoring,
    )


_container: ServiceContainer | None = None


def get_container() -> ServiceContainer:
    global _container
    if _container is None:
        _container = build_container()
        logger.info("Service container built (queue mode: %s)", _container.task_queue.mode)
    return _container


def set_container(container: ServiceContainer | None) -> None:
    global _container
    _container = container
