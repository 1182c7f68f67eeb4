"""
Routing rule engine.

Picks the processor / merchant account candidates for a charge from an
immutable rule set snapshot. Routing is a pure function of the request and
the snapshot, so the same inputs always give the same candidates.
"""
import hashlib
from typing import List, Optional

import structlog

from payout_core.domain.exceptions import NoRouteAvailableError
from payout_core.domain.models import MerchantCatalog
from payout_core.routing.models import (
    RouteCandidate,
    RoutingDecision,
    RoutingRequest,
    RoutingRule,
    RuleSet,
)
from payout_core.routing.predicates import evaluate

logger = structlog.get_logger(__name__)

CANARY_BUCKETS = 10000


def canary_bucket(rule_id: str, value: Optional[str]) -> int:
    """Stable bucket in [0, 10000) for a rule and a request attribute value."""
    digest = hashlib.sha256(f"{rule_id}:{value or ''}".encode()).hexdigest()
    return int(digest[:8], 16) % CANARY_BUCKETS


class RoutingRuleEngine:
    """Evaluates routing rules in priority order; the first match wins."""

    def match(self, request: RoutingRequest, rule_set: RuleSet) -> RoutingRule:
        """
        Find the winning rule.

        Only approved, active rules take part. Ties on priority are broken
        by rule id so the order is total.

        Raises:
            NoRouteAvailableError: If nothing matches
        """
        attributes = request.attributes()
        live = sorted(
            (rule for rule in rule_set.rules if rule.is_live),
            key=lambda rule: (rule.priority, rule.rule_id),
        )
        for rule in live:
            if evaluate(rule.predicate, attributes):
                return rule
        raise NoRouteAvailableError(
            "No routing rule matched",
            details={"rule_set_version": rule_set.version},
        )

    @staticmethod
    def catch_all(rule_set: RuleSet) -> RoutingRule:
        """Live catch-all rule with the lowest priority number."""
        return min(
            (rule for rule in rule_set.rules if rule.is_live and rule.is_catch_all),
            key=lambda rule: (rule.priority, rule.rule_id),
        )

    def route(
        self,
        request: RoutingRequest,
        rule_set: RuleSet,
        catalog: Optional[MerchantCatalog] = None,
    ) -> RoutingDecision:
        """
        Route a charge.

        Args:
            request: Charge attributes
            rule_set: Rule set snapshot to evaluate
            catalog: Optional processor / merchant account configuration used to
                drop candidates that cannot take this charge

        Returns:
            RoutingDecision: Winning rule and ordered candidates (canary, rule
                targets, then the catch-all targets as fallback)

        Raises:
            NoRouteAvailableError: If no rule matches or every candidate is filtered out
        """
        rule = self.match(request, rule_set)

        candidates: List[RouteCandidate] = []
        bucket = None
        if rule.canary is not None:
            value = request.attributes().get(rule.canary.bucket_attribute)
            bucket = canary_bucket(rule.rule_id, None if value is None else str(value))
            if bucket < rule.canary.percentage * (CANARY_BUCKETS / 100):
                candidates.append(
                    RouteCandidate(
                        processor_id=rule.canary.target.processor_id,
                        merchant_account_id=rule.canary.target.merchant_account_id,
                        canary=True,
                    )
                )

        seen = {(c.processor_id, c.merchant_account_id) for c in candidates}
        targets = [(target, False) for target in rule.targets]
        if not rule.is_catch_all:
            # Catch-all targets back up a specific rule when its targets fail
            fallback = self.catch_all(rule_set)
            targets.extend((target, True) for target in fallback.targets)
        for target, is_fallback in targets:
            key = (target.processor_id, target.merchant_account_id)
            if key in seen:
                continue
            seen.add(key)
            candidates.append(
                RouteCandidate(
                    processor_id=target.processor_id,
                    merchant_account_id=target.merchant_account_id,
                    fallback=is_fallback,
                )
            )

        if request.processor_hint:
            hinted = [c for c in candidates if c.processor_id == request.processor_hint]
            candidates = hinted + [c for c in candidates if c.processor_id != request.processor_hint]

        if catalog is not None:
            eligible = [
                c
                for c in candidates
                if catalog.accepts(
                    c.processor_id,
                    c.merchant_account_id,
                    request.platform,
                    request.amount_cents,
                    request.currency,
                )
            ]
            if not eligible:
                raise NoRouteAvailableError(
                    "No eligible merchant account for this charge",
                    code="no_eligible_merchant_account",
                    details={"rule_id": rule.rule_id, "currency": request.currency},
                )
            candidates = eligible

        decision = RoutingDecision(
            rule_id=rule.rule_id,
            rule_set_version=rule_set.version,
            candidates=candidates,
            canary_bucket=bucket,
        )
        logger.info(
            "charge_routed",
            rule_id=rule.rule_id,
            rule_set_version=rule_set.version,
            candidates=[c.processor_id for c in candidates],
            canary_bucket=bucket,
        )
        return decision
