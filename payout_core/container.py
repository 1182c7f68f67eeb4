"""
Service wiring.

Builds every component from settings so the API, the workers and the
tests share one construction path.
"""
from typing import Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from payout_core.config import PolicyStore, Settings, get_settings
from payout_core.core.disputes import DISPUTE_EVENT_TYPES, DisputeStateMachine
from payout_core.core.idempotency import EventRegistry, InMemoryEventRegistry, RedisEventRegistry
from payout_core.core.locks import KeyedLock, RedisKeyedLock, TransactionLock
from payout_core.core.orchestrator import MoneyOrchestrator
from payout_core.core.reconciliation import SettlementReconciliationService
from payout_core.core.refunds import RefundAutomationEngine
from payout_core.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from payout_core.database.repository import InMemoryRepository, Repository
from payout_core.database.sql_repository import SqlAlchemyRepository
from payout_core.domain.models import MerchantAccount, MerchantCatalog, PaymentProcessor
from payout_core.integrations.ledger import HttpLedgerClient, InMemoryLedger, LedgerClient
from payout_core.integrations.notifications import LoggingNotifier, Notifier
from payout_core.integrations.processors import ProcessorAdapter, ProcessorGateway
from payout_core.integrations.stripe_adapter import StripeProcessorAdapter
from payout_core.integrations.webhook_handler import EventDispatcher
from payout_core.routing.engine import RoutingRuleEngine
from payout_core.routing.models import ApprovalStatus, RouteTarget, RoutingRule, RuleSet
from payout_core.routing.predicates import Always
from payout_core.routing.rule_store import RuleSetStore
from payout_core.trust.service import TrustService
from payout_core.trust.signal_collector import SignalCollector, default_providers
from payout_core.trust.velocity_tracker import VelocityTracker
from payout_core.workers.event_worker import EventWorkerPool

logger = structlog.get_logger(__name__)

CHARGE_EVENT_TYPES = (
    "charge.authorized",
    "charge.captured",
    "charge.failed",
    "charge.settled",
    "charge.refunded",
)


def default_catalog() -> MerchantCatalog:
    """Single Stripe account used when no catalog is configured."""
    return MerchantCatalog(
        processors={
            "stripe": PaymentProcessor(
                id="stripe",
                name="Stripe",
                supported_currencies=["USD", "EUR", "GBP"],
                fee_bps=290,
                fixed_fee_cents=30,
                dispute_fee_cents=1500,
            )
        },
        merchant_accounts={
            "acct_stripe_default": MerchantAccount(
                id="acct_stripe_default",
                processor_id="stripe",
                currencies=["USD", "EUR", "GBP"],
            )
        },
    )


def default_rule_set() -> RuleSet:
    """Rule set holding only the catch-all rule."""
    return RuleSet(
        version=1,
        rules=(
            RoutingRule(
                rule_id="catch_all",
                name="Default route",
                priority=1000,
                predicate=Always(),
                targets=(RouteTarget(processor_id="stripe", merchant_account_id="acct_stripe_default"),),
                approval_status=ApprovalStatus.APPROVED,
                approved_by="system",
            ),
        ),
    )


class Container:
    """All long-lived services of one process."""

    def __init__(
        self,
        settings: Settings,
        repository: Repository,
        ledger: LedgerClient,
        notifier: Notifier,
        policy_store: PolicyStore,
        rule_store: RuleSetStore,
        gateway: ProcessorGateway,
        trust_service: TrustService,
        orchestrator: MoneyOrchestrator,
        refunds: RefundAutomationEngine,
        disputes: DisputeStateMachine,
        reconciliation: SettlementReconciliationService,
        dispatcher: EventDispatcher,
        workers: EventWorkerPool,
        engine: Optional[AsyncEngine] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings
        self.repository = repository
        self.ledger = ledger
        self.notifier = notifier
        self.policy_store = policy_store
        self.rule_store = rule_store
        self.gateway = gateway
        self.trust_service = trust_service
        self.orchestrator = orchestrator
        self.refunds = refunds
        self.disputes = disputes
        self.reconciliation = reconciliation
        self.dispatcher = dispatcher
        self.workers = workers
        self.engine = engine
        self.redis_client = redis_client

    async def start(self) -> None:
        if self.engine is not None:
            await init_db(self.engine)
            logger.info("database_initialized")
        await self.workers.start()

    async def close(self) -> None:
        await self.workers.stop()
        if isinstance(self.ledger, HttpLedgerClient):
            await self.ledger.close()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("container_closed")


def build_container(
    settings: Optional[Settings] = None,
    repository: Optional[Repository] = None,
    ledger: Optional[LedgerClient] = None,
    adapters: Optional[Dict[str, ProcessorAdapter]] = None,
    notifier: Optional[Notifier] = None,
    catalog: Optional[MerchantCatalog] = None,
    rule_set: Optional[RuleSet] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> Container:
    """
    Build the service graph.

    Args:
        settings: Settings (defaults to the cached environment settings)
        repository: Storage override
        ledger: Ledger override
        adapters: Processor adapters keyed by processor id
        notifier: Notifier override
        catalog: Processor and merchant account configuration
        rule_set: Initial routing rules
        redis_client: Redis client for Redis-backed locks, registry and velocity

    Returns:
        Container: Wired services (call ``start()`` before use)
    """
    settings = settings or get_settings()

    needs_redis = "redis" in (settings.lock_backend, settings.idempotency_backend)
    if redis_client is None and settings.redis_url and needs_redis:
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)

    engine = None
    if repository is None:
        if settings.storage_backend == "sql":
            engine = create_engine_from_settings(settings)
            repository = SqlAlchemyRepository(create_session_factory(engine))
        else:
            repository = InMemoryRepository()

    if ledger is None:
        ledger = (
            HttpLedgerClient(settings.ledger_base_url, timeout=settings.ledger_timeout)
            if settings.ledger_base_url
            else InMemoryLedger()
        )

    notifier = notifier or LoggingNotifier()

    if adapters is None:
        adapters = {}
        if settings.stripe_secret_key:
            adapters["stripe"] = StripeProcessorAdapter(settings.stripe_secret_key)

    locks: TransactionLock
    registry: EventRegistry
    if settings.lock_backend == "redis" and redis_client is not None:
        locks = RedisKeyedLock(redis_client, timeout=settings.redis_lock_timeout)
    else:
        locks = KeyedLock()
    if settings.idempotency_backend == "redis" and redis_client is not None:
        registry = RedisEventRegistry(redis_client, ttl=settings.event_dedup_ttl)
    else:
        registry = InMemoryEventRegistry(ttl=settings.event_dedup_ttl)

    tracker = VelocityTracker(redis_client) if redis_client is not None else None

    policy_store = PolicyStore(settings.build_policy())
    rule_store = RuleSetStore(rule_set or default_rule_set())
    gateway = ProcessorGateway(
        adapters,
        timeout=settings.processor_call_timeout,
        max_attempts=settings.processor_retry_max_attempts,
        base_delay=settings.processor_retry_base_delay,
        max_delay=settings.processor_retry_max_delay,
        decline_codes=settings.decline_reason_codes,
        retryable_codes=settings.retryable_reason_codes,
    )
    collector = SignalCollector(
        default_providers(repository, tracker, settings.refund_abuse_window_hours),
        timeout=settings.signal_provider_timeout,
    )
    trust_service = TrustService(collector, repository, policy_store)

    orchestrator = MoneyOrchestrator(
        repository=repository,
        rule_store=rule_store,
        gateway=gateway,
        trust_service=trust_service,
        ledger=ledger,
        locks=locks,
        policy_store=policy_store,
        catalog=catalog or default_catalog(),
        known_platforms=settings.known_platforms,
        routing_engine=RoutingRuleEngine(),
        velocity_tracker=tracker,
    )
    refunds = RefundAutomationEngine(repository, orchestrator, trust_service, notifier, policy_store)
    disputes = DisputeStateMachine(
        repository,
        orchestrator,
        notifier,
        response_window_days=settings.dispute_response_window_days,
        default_fee_cents=settings.default_dispute_fee_cents,
    )
    reconciliation = SettlementReconciliationService(
        repository,
        orchestrator,
        disputes,
        notifier,
        tolerance_cents=settings.settlement_tolerance_cents,
    )

    dispatcher = EventDispatcher(registry, repository, notifier)
    for event_type in CHARGE_EVENT_TYPES:
        dispatcher.register_handler(event_type, _charge_handler(orchestrator))
    for event_type in DISPUTE_EVENT_TYPES:
        dispatcher.register_handler(event_type, _dispute_handler(disputes))

    workers = EventWorkerPool(dispatcher, workers=settings.event_workers)

    logger.info(
        "container_built",
        storage_backend=settings.storage_backend,
        lock_backend=type(locks).__name__,
        processors=sorted(adapters),
        rule_set_version=rule_store.version,
        policy_version=policy_store.current().version,
    )
    return Container(
        settings=settings,
        repository=repository,
        ledger=ledger,
        notifier=notifier,
        policy_store=policy_store,
        rule_store=rule_store,
        gateway=gateway,
        trust_service=trust_service,
        orchestrator=orchestrator,
        refunds=refunds,
        disputes=disputes,
        reconciliation=reconciliation,
        dispatcher=dispatcher,
        workers=workers,
        engine=engine,
        redis_client=redis_client,
    )


def _charge_handler(orchestrator: MoneyOrchestrator):
    async def handle(event):
        transaction = await orchestrator.apply_processor_event(event)
        return {"transaction_id": transaction.id, "status": transaction.status.value}

    return handle


def _dispute_handler(disputes: DisputeStateMachine):
    async def handle(event):
        dispute = await disputes.handle_event(event)
        return {"dispute_id": dispute.id, "stage": dispute.stage.value}

    return handle
