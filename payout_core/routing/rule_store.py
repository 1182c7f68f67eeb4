"""
Copy-on-write store for routing rules.

Every change publishes a new ``RuleSet`` with the next version number.
Readers keep whatever snapshot they fetched; nothing is mutated in place.
"""
from typing import Dict

import structlog

from payout_core.domain.exceptions import NotFoundError, ValidationError
from payout_core.domain.models import utc_now
from payout_core.routing.models import ApprovalStatus, RoutingRule, RuleSet

logger = structlog.get_logger(__name__)


class RuleSetStore:
    """Holds routing rules through the propose / approve workflow."""

    def __init__(self, initial: RuleSet):
        """
        Initialize store.

        Args:
            initial: First published rule set (must already hold a live catch-all)
        """
        self._snapshot = initial
        self._rules: Dict[str, RoutingRule] = {rule.rule_id: rule for rule in initial.rules}

    def snapshot(self) -> RuleSet:
        return self._snapshot

    def get(self, rule_id: str) -> RoutingRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Routing rule {rule_id} not found", details={"rule_id": rule_id})
        return rule

    def propose(self, rule: RoutingRule) -> RuleSet:
        """
        Add or replace a rule pending approval.

        Returns:
            RuleSet: Newly published snapshot
        """
        pending = rule.model_copy(
            update={
                "approval_status": ApprovalStatus.PENDING,
                "approved_by": None,
                "approved_at": None,
            }
        )
        logger.info("routing_rule_proposed", rule_id=rule.rule_id, priority=rule.priority)
        return self._publish({**self._rules, rule.rule_id: pending})

    def approve(self, rule_id: str, approver: str) -> RuleSet:
        rule = self.get(rule_id)
        approved = rule.model_copy(
            update={
                "approval_status": ApprovalStatus.APPROVED,
                "approved_by": approver,
                "approved_at": utc_now(),
            }
        )
        logger.info("routing_rule_approved", rule_id=rule_id, approved_by=approver)
        return self._publish({**self._rules, rule_id: approved})

    def reject(self, rule_id: str, approver: str) -> RuleSet:
        rule = self.get(rule_id)
        rejected = rule.model_copy(
            update={"approval_status": ApprovalStatus.REJECTED, "approved_by": approver}
        )
        logger.info("routing_rule_rejected", rule_id=rule_id, rejected_by=approver)
        return self._publish({**self._rules, rule_id: rejected})

    def deactivate(self, rule_id: str) -> RuleSet:
        rule = self.get(rule_id)
        logger.info("routing_rule_deactivated", rule_id=rule_id)
        return self._publish({**self._rules, rule_id: rule.model_copy(update={"is_active": False})})

    def _publish(self, rules: Dict[str, RoutingRule]) -> RuleSet:
        try:
            snapshot = RuleSet(version=self._snapshot.version + 1, rules=tuple(rules.values()))
        except ValueError as e:
            raise ValidationError(
                "Rule change would leave an invalid rule set",
                code="invalid_rule_set",
                details={"error": str(e)},
            ) from e
        self._rules = rules
        self._snapshot = snapshot
        logger.info("rule_set_published", version=snapshot.version, rules=len(snapshot.rules))
        return snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version
