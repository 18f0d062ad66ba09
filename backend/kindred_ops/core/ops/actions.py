"""
Proposal action schema shared by triggers and reaction rules.

    {"create_proposal": {"title": "...", "step_kinds": [...], "auto_approve": true}}
"""

import re
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from kindred_ops.core.ops.errors import TriggerEvaluationError

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class CreateProposalAction(BaseModel):
    """Template for the proposal a trigger or reaction creates."""
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=500)
    step_kinds: list[str] = Field(min_length=1)
    auto_approve: bool = True
    description: Optional[str] = None


class ProposalAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    create_proposal: CreateProposalAction


def parse_action(raw: Any) -> ProposalAction:
    """
    Parse a stored action.

    Raises:
        TriggerEvaluationError: If the action does not match the schema
    """
    if isinstance(raw, ProposalAction):
        return raw
    try:
        return ProposalAction.model_validate(raw)
    except PydanticValidationError as e:
        raise TriggerEvaluationError(f"Malformed action: {e}") from e


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """
    Fill ``{name}`` placeholders from ``values``.

    Unknown placeholders are left untouched.
    """
    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, template)
