"""
Routing predicates: a small tagged tree and its interpreter.

Predicates are plain data (serializable, diffable, reviewable in the rule
approval workflow) and are evaluated by ``evaluate`` with no side effects.
"""
from enum import Enum
from typing import Annotated, Any, List, Literal, Mapping, Union

from pydantic import BaseModel, Field, model_validator

ROUTING_FIELDS = frozenset(
    {
        "platform",
        "amount_cents",
        "currency",
        "risk_tier",
        "payment_method",
        "region",
        "payer_id",
    }
)


class Operator(str, Enum):
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    BETWEEN = "between"


class Condition(BaseModel):
    """Compare one request attribute against a value."""

    kind: Literal["condition"] = "condition"
    field: str
    operator: Operator
    value: Any

    @model_validator(mode="after")
    def validate_shape(self) -> "Condition":
        if self.field not in ROUTING_FIELDS:
            raise ValueError(f"Unknown routing field '{self.field}'")
        if self.operator in (Operator.IN, Operator.NOT_IN) and not isinstance(self.value, list):
            raise ValueError(f"Operator '{self.operator.value}' needs a list value")
        if self.operator == Operator.BETWEEN and (
            not isinstance(self.value, list) or len(self.value) != 2
        ):
            raise ValueError("Operator 'between' needs a [low, high] value")
        return self


class AllOf(BaseModel):
    kind: Literal["all"] = "all"
    predicates: List["Predicate"]


class AnyOf(BaseModel):
    kind: Literal["any"] = "any"
    predicates: List["Predicate"]


class Not(BaseModel):
    kind: Literal["not"] = "not"
    predicate: "Predicate"


class Always(BaseModel):
    """Matches every request; marks a catch-all rule."""

    kind: Literal["always"] = "always"


Predicate = Annotated[
    Union[Condition, AllOf, AnyOf, Not, Always],
    Field(discriminator="kind"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


def evaluate(predicate: Predicate, context: Mapping[str, Any]) -> bool:
    """
    Evaluate a predicate tree against request attributes.

    Args:
        predicate: Predicate tree
        context: Request attributes keyed by routing field

    Returns:
        bool: Whether the request matches
    """
    if isinstance(predicate, Always):
        return True
    if isinstance(predicate, AllOf):
        return all(evaluate(p, context) for p in predicate.predicates)
    if isinstance(predicate, AnyOf):
        return any(evaluate(p, context) for p in predicate.predicates)
    if isinstance(predicate, Not):
        return not evaluate(predicate.predicate, context)
    return _compare(predicate, context.get(predicate.field))


def _compare(condition: Condition, actual: Any) -> bool:
    op = condition.operator
    expected = condition.value

    if op == Operator.EQ:
        return actual == expected
    if op == Operator.NE:
        return actual != expected
    if op == Operator.IN:
        return actual in expected
    if op == Operator.NOT_IN:
        return actual not in expected

    # Ordering operators never match a missing attribute
    if actual is None:
        return False
    try:
        if op == Operator.LT:
            return actual < expected
        if op == Operator.LTE:
            return actual <= expected
        if op == Operator.GT:
            return actual > expected
        if op == Operator.GTE:
            return actual >= expected
        low, high = expected
        return low <= actual <= high
    except TypeError:
        return False


def is_catch_all(predicate: Predicate) -> bool:
    return isinstance(predicate, Always)
