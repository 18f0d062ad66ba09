"""
Policy Store - named configuration lookups.

Policies are operator-managed records:
- auto_approve_step_kinds -> {"allowed": [...]}
- agent_daily_cap_<agent> -> {"max_tasks": int}
- reaction_matrix         -> {"rules": [...]}
"""

import logging
from typing import Optional, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.models import Policy
from kindred_ops.core.ops.errors import PolicyMissingError

logger = logging.getLogger(__name__)

AUTO_APPROVE_POLICY = "auto_approve_step_kinds"
DAILY_CAP_PREFIX = "agent_daily_cap_"
REACTION_MATRIX_POLICY = "reaction_matrix"

ModelT = TypeVar("ModelT", bound=BaseModel)


class AutoApprovePolicy(BaseModel):
    """Step kinds that may bypass human review."""
    allowed: list[str] = Field(default_factory=list)


class AgentDailyCapPolicy(BaseModel):
    """Maximum completed steps per agent per UTC day."""
    max_tasks: int = Field(ge=0)


def daily_cap_policy_name(agent_id: str) -> str:
    """Policy name holding an agent's daily cap."""
    return f"{DAILY_CAP_PREFIX}{agent_id}"


class PolicyStore:
    """
    Read access to the policy table.

    The orchestrator only reads; ``put`` exists for operator tooling
    (seed script, admin API).
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, name: str) -> Optional[dict]:
        """Get a policy value by name, None if absent."""
        result = await self.db.execute(
            select(Policy.value).where(Policy.name == name)
        )
        return result.scalar_one_or_none()

    async def get_record(self, name: str) -> Optional[Policy]:
        """Get the full policy record by name."""
        result = await self.db.execute(
            select(Policy).where(Policy.name == name)
        )
        return result.scalar_one_or_none()

    async def require(self, name: str, model: type[ModelT]) -> ModelT:
        """
        Load and validate a policy.

        Raises:
            PolicyMissingError: If the policy is absent or its value does
                not match ``model``
        """
        value = await self.get(name)
        if value is None:
            raise PolicyMissingError(name)

        try:
            return model.model_validate(value)
        except PydanticValidationError as e:
            logger.warning(f"Policy {name} has an invalid value: {e}")
            raise PolicyMissingError(name, f"Policy {name} is malformed") from e

    async def get_prefixed(self, prefix: str) -> dict[str, dict]:
        """All policies whose name starts with ``prefix``, keyed by name."""
        result = await self.db.execute(
            select(Policy.name, Policy.value).where(Policy.name.startswith(prefix, autoescape=True))
        )
        return {name: value for name, value in result.all()}

    async def list_policies(self) -> list[Policy]:
        """All policy records, ordered by name."""
        result = await self.db.execute(select(Policy).order_by(Policy.name))
        return list(result.scalars().all())

    async def put(
        self,
        name: str,
        value: dict,
        description: Optional[str] = None,
    ) -> Policy:
        """Create or replace a policy (operator action)."""
        policy = await self.get_record(name)
        if policy is None:
            policy = Policy(name=name, value=value, description=description)
            self.db.add(policy)
        else:
            policy.value = value
            if description is not None:
                policy.description = description

        await self.db.commit()
        await self.db.refresh(policy)

        logger.info(f"Policy {name} updated")
        return policy
