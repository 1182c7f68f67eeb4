"""Charge routing: rules, predicates and the rule engine."""
from .engine import RoutingRuleEngine
from .models import RoutingDecision, RoutingRequest, RoutingRule, RuleSet
from .rule_store import RuleSetStore

__all__ = [
    "RoutingDecision",
    "RoutingRequest",
    "RoutingRule",
    "RoutingRuleEngine",
    "RuleSet",
    "RuleSetStore",
]
