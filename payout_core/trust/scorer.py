"""
Trust score calculation engine with a weighted group ensemble.

Each signal group produces a partial score in [0, 100] (higher means more
trustworthy). Partial scores are combined with the policy weights of the
entity type over the groups that are actually available, so a missing
group lowers confidence rather than dragging the score toward zero.

The engine is pure: same signal bag and same policy version always give
the same score, confidence and reason codes.
"""
import math
from typing import Any, Dict, List, Optional, Tuple

import structlog

from payout_core.config.policy import SIGNAL_GROUPS, DecisionThresholds, ScoringPolicy
from payout_core.domain.models import (
    EntityType,
    GroupContribution,
    RiskTier,
    ScoreExplanation,
    TrustDecision,
    TrustScoreRecord,
)
from payout_core.trust.models import SignalBag

logger = structlog.get_logger(__name__)

NEUTRAL_SCORE = 50.0

# Platform risk levels; unknown platforms are treated as medium risk.
PLATFORM_RISK_LEVELS: Dict[str, str] = {
    "boyfanz": "medium",
    "girlfanz": "medium",
    "pupfanz": "medium",
    "taboofanz": "high",
    "daddyfanz": "high",
    "transfanz": "low",
}

GroupResult = Tuple[float, List[str], List[str]]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def decide(score: int, thresholds: DecisionThresholds) -> TrustDecision:
    """
    Map a score to a decision. Equality satisfies the threshold it names.
    """
    if score >= thresholds.auto_approve:
        return TrustDecision.ALLOW
    if score <= thresholds.auto_reject:
        return TrustDecision.BLOCK
    return TrustDecision.CHALLENGE


def risk_tier_for(record: TrustScoreRecord) -> RiskTier:
    """Routing risk tier implied by a trust decision."""
    if record.decision == TrustDecision.ALLOW:
        return RiskTier.LOW
    if record.decision == TrustDecision.BLOCK:
        return RiskTier.HIGH
    return RiskTier.MEDIUM


class TrustScoringEngine:
    """
    Weighted ensemble scoring engine.

    Produces allow / challenge / block decisions with reason codes and a
    per-group explanation.
    """

    def score(
        self,
        bag: SignalBag,
        entity_type: EntityType,
        entity_id: str,
        policy: ScoringPolicy,
    ) -> TrustScoreRecord:
        """
        Score one entity.

        Args:
            bag: Collected signals
            entity_type: What is being scored (selects the group weights)
            entity_id: Identifier of the scored entity
            policy: Scoring policy version to apply

        Returns:
            TrustScoreRecord: Immutable scoring outcome
        """
        weights = policy.weights.for_entity(entity_type.value).as_dict()
        scorers = {
            "device": self._score_device,
            "network": self._score_network,
            "payment": self._score_payment,
            "behavioral": self._score_behavioral,
            "platform": self._score_platform,
        }

        results: Dict[str, GroupResult] = {}
        for group in SIGNAL_GROUPS:
            if bag.has_group(group):
                results[group] = scorers[group](bag, policy)

        available_weight = sum(weights[group] for group in results)
        if available_weight > 0:
            combined = sum(weights[g] * clamp(results[g][0]) for g in results) / available_weight
        else:
            combined = NEUTRAL_SCORE
        score = round_half_up(clamp(combined))

        confidence = round_half_up(
            clamp(100 * sum(weights[g] * bag.completeness(g) for g in results))
        )

        contributions: List[GroupContribution] = []
        reason_codes: List[str] = []
        protective: List[str] = []
        for group in SIGNAL_GROUPS:
            if group in results:
                partial, reasons, protects = results[group]
                effective = weights[group] / available_weight if available_weight else 0.0
                contributions.append(
                    GroupContribution(
                        group=group,
                        available=True,
                        score=round(clamp(partial), 2),
                        weight=weights[group],
                        effective_weight=round(effective, 4),
                        contribution=round(effective * clamp(partial), 2),
                        completeness=round(bag.completeness(group), 4),
                        reason_codes=reasons,
                    )
                )
                reason_codes.extend(reasons)
                protective.extend(protects)
            else:
                contributions.append(
                    GroupContribution(group=group, available=False, weight=weights[group])
                )

        missing = [g for g in policy.required_groups if g not in results]
        risk_factors = list(reason_codes)
        if missing:
            reason_codes.append("partial_signals")
        if confidence < policy.low_confidence_below:
            reason_codes.append("low_confidence")

        decision = decide(score, policy.thresholds)

        record = TrustScoreRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            score=score,
            confidence=confidence,
            decision=decision,
            reason_codes=reason_codes,
            explanation=ScoreExplanation(
                contributions=contributions,
                missing_groups=missing,
                risk_factors=risk_factors,
                protective_factors=protective,
            ),
            signals=dict(bag.values),
            policy_version=policy.version,
        )

        logger.info(
            "trust_score_calculated",
            entity_type=entity_type.value,
            entity_id=entity_id,
            score=score,
            confidence=confidence,
            decision=decision.value,
            reason_codes=reason_codes,
            policy_version=policy.version,
        )
        return record

    def _score_device(self, bag: SignalBag, policy: ScoringPolicy) -> GroupResult:
        """Score device reputation and usage."""
        signals = bag.group("device")
        score = float(signals.get("reputation", NEUTRAL_SCORE))
        reasons: List[str] = []
        protective: List[str] = []

        if _number(signals.get("velocity")) > policy.max_transactions_per_hour:
            score -= 30
            reasons.append("high_velocity")
        if signals.get("new_device"):
            score -= 10
            reasons.append("new_device")
        patterns = signals.get("suspicious_patterns") or []
        if patterns:
            score -= 15 * len(patterns)
            reasons.append("suspicious_device_patterns")
        if not reasons and score >= 80:
            protective.append("trusted_device")

        return score, reasons, protective

    def _score_network(self, bag: SignalBag, policy: ScoringPolicy) -> GroupResult:
        """Score IP reputation, anonymizers, travel and country risk."""
        signals = bag.group("network")
        score = float(signals.get("ip_reputation", NEUTRAL_SCORE))
        reasons: List[str] = []

        if signals.get("tor_vpn"):
            score -= 40
            reasons.append("tor_vpn_detected")
        if signals.get("suspicious_isp"):
            score -= 20
            reasons.append("suspicious_isp")
        if _number(signals.get("geo_velocity")) > 1000:
            score -= 30
            reasons.append("impossible_travel")

        country_risk = signals.get("country_risk")
        if country_risk is None:
            country_risk = 100 if signals.get("country") in policy.high_risk_countries else 0
        if _number(country_risk) > 70:
            score -= 25
            reasons.append("high_risk_country")

        return score, reasons, []

    def _score_payment(self, bag: SignalBag, policy: ScoringPolicy) -> GroupResult:
        """Score card verification results."""
        signals = bag.group("payment")
        score = float(signals.get("score", 70))
        reasons: List[str] = []
        protective: List[str] = []

        if signals.get("avs_match") is False:
            score -= 25
            reasons.append("avs_mismatch")
        if signals.get("cvv_match") is False:
            score -= 30
            reasons.append("cvv_mismatch")
        if signals.get("prepaid"):
            score -= 10
            reasons.append("prepaid_card")

        bin_country = signals.get("bin_country")
        ip_country = bag.get("network.country")
        if bin_country and ip_country and bin_country != ip_country:
            score -= 15
            reasons.append("bin_country_mismatch")

        if signals.get("avs_match") and signals.get("cvv_match"):
            protective.append("card_verified")

        return score, reasons, protective

    def _score_behavioral(self, bag: SignalBag, policy: ScoringPolicy) -> GroupResult:
        """Score account history, spending and refund behavior."""
        signals = bag.group("behavioral")
        score = 50.0
        reasons: List[str] = []
        protective: List[str] = []

        account_age = signals.get("account_age_days")
        if account_age is not None:
            if account_age > 365:
                score += 20
                protective.append("established_account")
            elif account_age > 90:
                score += 10
            elif account_age < 1:
                score -= 20
                reasons.append("new_account")

        score += _number(signals.get("spending_consistency")) * 0.3

        refund_rate = _number(signals.get("refund_rate"))
        if refund_rate > 20:
            score -= 30
            reasons.append("high_refund_rate")
        elif refund_rate > 10:
            score -= 15
            reasons.append("elevated_refund_rate")

        if _number(signals.get("velocity_score")) > 70:
            score -= 25
            reasons.append("high_velocity_score")

        return score, reasons, protective

    def _score_platform(self, bag: SignalBag, policy: ScoringPolicy) -> GroupResult:
        """Score platform and creator context."""
        signals = bag.group("platform")
        score = 70.0
        protective: List[str] = []

        risk_level = signals.get("risk_level", "medium")
        if risk_level == "high":
            score -= 20
        elif risk_level == "medium":
            score -= 10
        elif risk_level == "low":
            score += 10

        tier = signals.get("creator_tier")
        if tier == "premium":
            score += 15
            protective.append("premium_creator")
        elif tier == "verified":
            score += 10
            protective.append("verified_creator")

        reasons = ["high_risk_platform"] if risk_level == "high" else []
        return score, reasons, protective


def _number(value: Optional[Any]) -> float:
    if value is None or isinstance(value, bool):
        return float(value or 0)
    return float(value)
