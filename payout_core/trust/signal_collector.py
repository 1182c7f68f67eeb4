"""
Signal collection service.

Runs one or more providers per signal group concurrently and merges their
output into a flat ``SignalBag``. A provider that fails or times out simply
leaves its group absent; the scorer turns that into a ``partial_signals``
reason and a lower confidence.
"""
import asyncio
import statistics
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog

from payout_core.database.repository import Repository
from payout_core.domain.models import RefundStatus, TransactionStatus
from payout_core.trust.models import SignalBag, SignalContext
from payout_core.trust.scorer import PLATFORM_RISK_LEVELS
from payout_core.trust.velocity_tracker import VelocityTracker

logger = structlog.get_logger(__name__)

CHARGED_STATUSES = {
    TransactionStatus.CAPTURED,
    TransactionStatus.SETTLED,
    TransactionStatus.PARTIALLY_REFUNDED,
    TransactionStatus.REFUNDED,
}


class SignalProvider(ABC):
    """Produces the signals of one group. Keys are returned without the group prefix."""

    group: str

    @abstractmethod
    async def collect(self, context: SignalContext) -> Dict[str, Any]: ...


class RequestSignalProvider(SignalProvider):
    """Copies caller-supplied raw signals of one group."""

    def __init__(self, group: str):
        self.group = group

    async def collect(self, context: SignalContext) -> Dict[str, Any]:
        prefix = f"{self.group}."
        signals = {
            key[len(prefix):]: value
            for key, value in context.raw_signals.items()
            if key.startswith(prefix)
        }
        if self.group == "device" and context.device_fingerprint:
            signals.setdefault("fingerprint", context.device_fingerprint)
        return signals


class VelocitySignalProvider(SignalProvider):
    """Device charge velocity from the Redis velocity counters."""

    group = "device"

    def __init__(self, tracker: VelocityTracker):
        self.tracker = tracker

    async def collect(self, context: SignalContext) -> Dict[str, Any]:
        velocity = await self.tracker.get_velocity(
            device_fingerprint=context.device_fingerprint,
            payer_id=context.payer_id,
            ip_address=context.ip_address,
        )
        if not velocity:
            return {}
        return {
            "velocity": velocity.get("device_count_1hr", velocity.get("payer_count_1hr", 0)),
        }


class BehavioralHistoryProvider(SignalProvider):
    """Account age, spending and refund behavior derived from stored history."""

    group = "behavioral"

    def __init__(self, repository: Repository, refund_window_hours: int = 24):
        self.repository = repository
        self.refund_window_hours = refund_window_hours

    async def collect(self, context: SignalContext) -> Dict[str, Any]:
        if not context.payer_id:
            return {}

        transactions = await self.repository.list_transactions_for_payer(context.payer_id)
        refunds = await self.repository.list_refunds_for_payer(context.payer_id)
        now = context.occurred_at

        charged = [t for t in transactions if t.status in CHARGED_STATUSES]
        granted = [
            r for r in refunds if r.status in (RefundStatus.APPROVED, RefundStatus.PROCESSED)
        ]
        window_start = now - timedelta(hours=self.refund_window_hours)
        recent_requests = [r for r in refunds if r.requested_at >= window_start]
        last_hour = [t for t in transactions if t.created_at >= now - timedelta(hours=1)]

        signals: Dict[str, Any] = {
            "account_age_days": (now - transactions[0].created_at).days if transactions else 0,
            "refund_rate": round(100 * len(granted) / len(charged), 2) if charged else 0.0,
            "velocity_score": min(100, 10 * len(last_hour)),
            "prior_refund_count": len(recent_requests),
        }
        amounts = [t.amount_cents for t in charged]
        if len(amounts) >= 3:
            mean = statistics.fmean(amounts)
            spread = statistics.pstdev(amounts) / mean if mean else 1.0
            signals["spending_consistency"] = round(max(0.0, 100 - 100 * spread), 2)
        return signals


class PlatformProfileProvider(SignalProvider):
    """Platform risk level and creator tier."""

    group = "platform"

    def __init__(self, creator_tiers: Optional[Dict[str, str]] = None):
        self.creator_tiers = creator_tiers or {}

    async def collect(self, context: SignalContext) -> Dict[str, Any]:
        if not context.platform:
            return {}
        signals: Dict[str, Any] = {
            "risk_level": PLATFORM_RISK_LEVELS.get(context.platform.lower(), "medium"),
        }
        if context.payee_id and context.payee_id in self.creator_tiers:
            signals["creator_tier"] = self.creator_tiers[context.payee_id]
        return signals


class SignalCollector:
    """
    Gathers signals for a transaction, refund request or user.

    Providers registered earlier win when two providers return the same key,
    so caller-supplied signals should be registered first.
    """

    def __init__(self, providers: Sequence[SignalProvider], timeout: float = 2.0):
        """
        Initialize collector.

        Args:
            providers: Signal providers in precedence order
            timeout: Per-provider timeout in seconds
        """
        self.providers = list(providers)
        self.timeout = timeout

    async def collect(self, context: SignalContext) -> SignalBag:
        """
        Collect signals from every provider concurrently.

        Args:
            context: Entity being scored

        Returns:
            SignalBag: Flat ``group.name`` signals plus the groups whose providers failed
        """
        results = await asyncio.gather(
            *(self._run(provider, context) for provider in self.providers),
            return_exceptions=True,
        )

        values: Dict[str, Any] = {}
        failed: List[str] = []
        for provider, result in zip(self.providers, results):
            if isinstance(result, Exception):
                logger.warning(
                    "signal_provider_failed",
                    provider=type(provider).__name__,
                    group=provider.group,
                    entity_type=context.entity_type.value,
                    entity_id=context.entity_id,
                    error=repr(result),
                )
                failed.append(provider.group)
                continue
            if isinstance(result, BaseException):
                raise result
            for key, value in result.items():
                values.setdefault(f"{provider.group}.{key}", value)

        bag = SignalBag(values=values)
        bag.failed_groups = sorted({g for g in failed if not bag.has_group(g)})

        logger.debug(
            "signals_collected",
            entity_type=context.entity_type.value,
            entity_id=context.entity_id,
            groups=bag.available_groups(),
            failed_groups=bag.failed_groups,
        )
        return bag

    async def _run(self, provider: SignalProvider, context: SignalContext) -> Dict[str, Any]:
        return await asyncio.wait_for(provider.collect(context), timeout=self.timeout)


def default_providers(
    repository: Repository,
    tracker: Optional[VelocityTracker] = None,
    refund_window_hours: int = 24,
) -> List[SignalProvider]:
    """Caller-supplied signals first, then derived ones."""
    providers: List[SignalProvider] = [
        RequestSignalProvider(group)
        for group in ("device", "network", "payment", "behavioral", "platform")
    ]
    if tracker is not None:
        providers.append(VelocitySignalProvider(tracker))
    providers.append(BehavioralHistoryProvider(repository, refund_window_hours))
    providers.append(PlatformProfileProvider())
    return providers
