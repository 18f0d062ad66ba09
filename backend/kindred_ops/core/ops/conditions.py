"""
Condition DSL - closed predicate language for triggers and reactions.

A condition is a JSON object tagged by ``op``:

    {"op": "eq",  "field": "type", "value": "step_completed"}
    {"op": "in",  "field": "step_kind", "values": ["deploy", "build"]}
    {"op": "all", "conditions": [...]}
    {"op": "any", "conditions": [...]}
    {"op": "not", "condition": {...}}

Fields are limited to the event's ``type``, ``step_kind`` and ``agent_id``.
Conditions are interpreted, never compiled or executed.
"""

from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from kindred_ops.core.models import AgentEvent
from kindred_ops.core.ops.errors import TriggerEvaluationError

EventField = Literal["type", "step_kind", "agent_id"]


class _Node(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Equals(_Node):
    op: Literal["eq"]
    field: EventField
    value: str


class OneOf(_Node):
    op: Literal["in"]
    field: EventField
    values: list[str] = Field(min_length=1)


class AllOf(_Node):
    op: Literal["all"]
    conditions: list["Condition"] = Field(min_length=1)


class AnyOf(_Node):
    op: Literal["any"]
    conditions: list["Condition"] = Field(min_length=1)


class Not(_Node):
    op: Literal["not"]
    condition: "Condition"


Condition = Annotated[
    Union[Equals, OneOf, AllOf, AnyOf, Not],
    Field(discriminator="op"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()

_condition_adapter = TypeAdapter(Condition)


def parse_condition(raw: Any) -> Condition:
    """
    Parse a stored condition.

    Raises:
        TriggerEvaluationError: If the condition is not a valid predicate
    """
    if isinstance(raw, (Equals, OneOf, AllOf, AnyOf, Not)):
        return raw
    try:
        return _condition_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise TriggerEvaluationError(f"Malformed condition: {e}") from e


def evaluate(condition: Condition, fields: Mapping[str, Optional[str]]) -> bool:
    """Evaluate a parsed condition against event fields."""
    if isinstance(condition, Equals):
        return fields.get(condition.field) == condition.value
    if isinstance(condition, OneOf):
        return fields.get(condition.field) in condition.values
    if isinstance(condition, AllOf):
        return all(evaluate(c, fields) for c in condition.conditions)
    if isinstance(condition, AnyOf):
        return any(evaluate(c, fields) for c in condition.conditions)
    if isinstance(condition, Not):
        return not evaluate(condition.condition, fields)

    raise TriggerEvaluationError(f"Unsupported condition node: {condition!r}")


def event_fields(event: AgentEvent) -> dict[str, Optional[str]]:
    """Fields of an event that conditions may inspect."""
    data = event.event_data or {}
    step_kind = data.get("step_kind")
    return {
        "type": event.event_type,
        "step_kind": step_kind if isinstance(step_kind, str) else None,
        "agent_id": event.agent_id,
    }


def matches(raw_condition: Any, event: AgentEvent) -> bool:
    """Parse ``raw_condition`` and evaluate it against ``event``."""
    return evaluate(parse_condition(raw_condition), event_fields(event))
