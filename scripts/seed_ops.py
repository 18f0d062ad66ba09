#!/usr/bin/env python3
"""
Seed default ops policies and built-in triggers.

Usage: python scripts/seed_ops.py [seed_file]

Policies are created or replaced; triggers that already exist (by name)
are left untouched.
"""

import asyncio
import sys
from pathlib import Path

import yaml
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.database import get_db_session, init_db
from kindred_ops.core.ops.policy import PolicyStore
from kindred_ops.core.ops.triggers import TriggerRegistry

DEFAULT_SEED_FILE = Path(__file__).parent / "ops_seed.yaml"


def load_seed(path: Path) -> dict:
    """Read and minimally check a seed file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data.get("policies", {}), dict):
        raise ValueError(f"{path}: 'policies' must be a mapping")
    if not isinstance(data.get("triggers", []), list):
        raise ValueError(f"{path}: 'triggers' must be a list")

    return data


async def seed(db: AsyncSession, data: dict) -> dict:
    """
    Apply seed data.

    Returns:
        Counts of policies written and triggers created/skipped
    """
    policies = PolicyStore(db)
    registry = TriggerRegistry(db)
    counts = {"policies": 0, "triggers_created": 0, "triggers_skipped": 0}

    for name, entry in data.get("policies", {}).items():
        await policies.put(name, entry["value"], description=entry.get("description"))
        counts["policies"] += 1
        print(f"  Policy: {name}")

    for entry in data.get("triggers", []):
        if await registry.get_by_name(entry["name"]) is not None:
            counts["triggers_skipped"] += 1
            print(f"  Trigger exists, skipped: {entry['name']}")
            continue

        await registry.create_trigger(
            name=entry["name"],
            description=entry.get("description"),
            condition=entry["condition"],
            action=entry["action"],
            cooldown_seconds=entry.get("cooldown_seconds", 0),
            enabled=entry.get("enabled", True),
        )
        counts["triggers_created"] += 1
        print(f"  Trigger: {entry['name']}")

    return counts


async def main(path: Path) -> int:
    if not path.exists():
        print(f"Error: Seed file not found at {path}")
        return 1

    data = load_seed(path)
    await init_db()

    async with get_db_session() as db:
        counts = await seed(db, data)

    print(f"\nSeeded {counts['policies']} policies, {counts['triggers_created']} triggers "
          f"({counts['triggers_skipped']} already present)")
    return 0


if __name__ == "__main__":
    seed_file = Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_SEED_FILE
    sys.exit(asyncio.run(main(seed_file)))
