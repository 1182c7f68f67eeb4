"""
Pytest configuration and fixtures.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple, Union

import pytest
import pytest_asyncio

from payout_core.config import Settings
from payout_core.config.policy import ScoringPolicy
from payout_core.container import Container, build_container
from payout_core.domain.models import (
    ChargeRequest,
    EntityType,
    MerchantAccount,
    MerchantCatalog,
    PaymentProcessor,
    RiskTier,
    TrustScoreRecord,
)
from payout_core.integrations.ledger import InMemoryLedger
from payout_core.integrations.notifications import LoggingNotifier
from payout_core.integrations.processors import (
    AuthorizationRequest,
    ProcessorAdapter,
    ProcessorResponse,
)
from payout_core.routing.models import ApprovalStatus, RouteTarget, RoutingRule, RuleSet
from payout_core.routing.predicates import AllOf, Always, Condition, Operator
from payout_core.trust.models import SignalBag
from payout_core.trust.scorer import TrustScoringEngine, decide

TIMEOUT = "timeout"

Outcome = Union[ProcessorResponse, Exception, str]


def declined(reason_code: str = "card_declined") -> ProcessorResponse:
    return ProcessorResponse(success=False, reason_code=reason_code, http_status=402)


def rejected(reason_code: str = "compliance_block") -> ProcessorResponse:
    return ProcessorResponse(success=False, reason_code=reason_code, http_status=403)


def server_error() -> ProcessorResponse:
    return ProcessorResponse(success=False, reason_code="server_error", http_status=503)


class ScriptedProcessor(ProcessorAdapter):
    """
    Processor double that plays queued outcomes per operation.

    An empty queue succeeds. ``TIMEOUT`` sleeps past any test gateway timeout.
    """

    def __init__(self, processor_id: str):
        self.processor_id = processor_id
        self.scripts: Dict[str, List[Outcome]] = {"authorize": [], "capture": [], "refund": []}
        self.calls: List[Tuple[str, str]] = []

    def queue(self, operation: str, *outcomes: Outcome) -> None:
        self.scripts[operation].extend(outcomes)

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def _play(self, operation: str, idempotency_key: str, external_id: str) -> ProcessorResponse:
        self.calls.append((operation, idempotency_key))
        outcome = self.scripts[operation].pop(0) if self.scripts[operation] else None
        if outcome == TIMEOUT:
            await asyncio.sleep(5)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, ProcessorResponse):
            return outcome
        return ProcessorResponse(success=True, external_id=external_id)

    async def authorize(self, request: AuthorizationRequest) -> ProcessorResponse:
        return await self._play(
            "authorize", request.idempotency_key, f"{self.processor_id}_{request.transaction_id}"
        )

    async def capture(
        self, external_id: str, amount_cents: int, currency: str, idempotency_key: str
    ) -> ProcessorResponse:
        return await self._play("capture", idempotency_key, external_id)

    async def refund(
        self, external_id: str, amount_cents: int, currency: str, idempotency_key: str
    ) -> ProcessorResponse:
        return await self._play("refund", idempotency_key, f"re_{idempotency_key}")


class FixedScoreEngine(TrustScoringEngine):
    """Runs the real engine, then pins the score per entity type."""

    def __init__(self, scores: Optional[Dict[EntityType, int]] = None, default: int = 90):
        self.scores = scores or {}
        self.default = default

    def score(
        self,
        bag: SignalBag,
        entity_type: EntityType,
        entity_id: str,
        policy: ScoringPolicy,
    ) -> TrustScoreRecord:
        record = super().score(bag, entity_type, entity_id, policy)
        pinned = self.scores.get(entity_type, self.default)
        return record.model_copy(
            update={"score": pinned, "decision": decide(pinned, policy.thresholds)}
        )


def make_catalog() -> MerchantCatalog:
    processors = {
        pid: PaymentProcessor(
            id=pid,
            name=pid.upper(),
            supported_currencies=["USD", "EUR"],
            fee_bps=290,
            fixed_fee_cents=30,
            dispute_fee_cents=1500,
        )
        for pid in ("x", "y")
    }
    accounts = {
        f"acct_{pid}": MerchantAccount(id=f"acct_{pid}", processor_id=pid, currencies=["USD", "EUR"])
        for pid in ("x", "y")
    }
    return MerchantCatalog(processors=processors, merchant_accounts=accounts)


def make_rule_set() -> RuleSet:
    """Rule A (priority 10, P1 + low risk -> X) and the catch-all (priority 1000 -> Y)."""
    return RuleSet(
        version=1,
        rules=(
            RoutingRule(
                rule_id="rule_a",
                name="P1 low risk",
                priority=10,
                predicate=AllOf(
                    predicates=[
                        Condition(field="platform", operator=Operator.EQ, value="P1"),
                        Condition(field="risk_tier", operator=Operator.EQ, value="low"),
                    ]
                ),
                targets=(RouteTarget(processor_id="x", merchant_account_id="acct_x"),),
                approval_status=ApprovalStatus.APPROVED,
                approved_by="ops",
            ),
            RoutingRule(
                rule_id="catch_all",
                name="Default",
                priority=1000,
                predicate=Always(),
                targets=(RouteTarget(processor_id="y", merchant_account_id="acct_y"),),
                approval_status=ApprovalStatus.APPROVED,
                approved_by="ops",
            ),
        ),
    )


def make_charge(**overrides: Any) -> ChargeRequest:
    data: Dict[str, Any] = {
        "platform": "P1",
        "payer_id": "fan_1",
        "payee_id": "creator_1",
        "amount_cents": 5000,
        "currency": "USD",
        "risk_tier": RiskTier.LOW,
        "device_fingerprint": "dev_1",
        "ip_address": "203.0.113.7",
    }
    data.update(overrides)
    return ChargeRequest(**data)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        app_name="payout-core-test",
        app_env="test",
        log_level="DEBUG",
        storage_backend="memory",
        processor_call_timeout=0.05,
        processor_retry_max_attempts=3,
        processor_retry_base_delay=0,
        processor_retry_max_delay=0,
        known_platforms=["P1", "P2"],
        event_workers=4,
    )


@pytest.fixture
def processors() -> Dict[str, ScriptedProcessor]:
    return {"x": ScriptedProcessor("x"), "y": ScriptedProcessor("y")}


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def score_engine() -> FixedScoreEngine:
    return FixedScoreEngine()


@pytest.fixture
def container(
    test_settings: Settings,
    processors: Dict[str, ScriptedProcessor],
    ledger: InMemoryLedger,
    notifier: LoggingNotifier,
    score_engine: FixedScoreEngine,
) -> Container:
    """Services over in-memory storage, scripted processors X and Y, pinned trust scores."""
    services = build_container(
        test_settings,
        ledger=ledger,
        adapters=dict(processors),
        notifier=notifier,
        catalog=make_catalog(),
        rule_set=make_rule_set(),
    )
    services.trust_service.engine = score_engine
    return services


@pytest_asyncio.fixture
async def running_container(container: Container) -> AsyncGenerator[Container, Any]:
    await container.start()
    yield container
    await container.close()
