"""Canonical hash input construction and acceptance checks."""
from __future__ import annotations

import hashlib
from typing import Dict, Optional

from powjobs.pow.difficulty import calculate_difficulty

ACTION_PREFIXES: Dict[str, str] = {
    "struct_build_complete": "BUILD",
    "planet_raid_complete": "RAID",
    "ore_miner_complete": "MINE",
    "ore_refinery_complete": "REFINE",
}
FALLBACK_PREFIX = "TASK"
RAID_ACTION = "planet_raid_complete"


def pow_entity_id(action_type: str, entity_id: str, target_id: Optional[str] = None) -> str:
    """Return the identifier hashed for the action.

    Raids hash a composite ``<fleet_id>@<target_planet_id>``; every other
    action hashes the entity id unchanged.
    """
    if action_type == RAID_ACTION and target_id:
        return f"{entity_id}@{target_id}"
    return entity_id


def build_hash_input(action_type: str, entity_id: str, block_start: int, nonce: str) -> str:
    prefix = ACTION_PREFIXES.get(action_type, FALLBACK_PREFIX)
    return f"{entity_id}{prefix}{block_start}NONCE{nonce}"


def hash_input(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def check_difficulty(digest: str, difficulty: int) -> bool:
    """Return True when the first ``difficulty`` hex characters are all ``'0'``."""
    if difficulty <= 0:
        return True
    if len(digest) < difficulty:
        return False
    return digest[:difficulty] == "0" * difficulty


def verify_proof_of_work(
    action_type: str,
    entity_id: str,
    block_start: int,
    nonce: str,
    proof: str,
    age: int,
    difficulty_range: int,
) -> bool:
    """Recompute the hash for ``nonce`` and check it against ``proof`` and the difficulty at ``age``."""
    digest = hash_input(build_hash_input(action_type, entity_id, block_start, nonce))
    if digest != proof:
        return False
    return check_difficulty(digest, calculate_difficulty(age, difficulty_range))
