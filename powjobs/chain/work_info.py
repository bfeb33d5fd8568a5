"""Lookup of ``block_start`` and difficulty range for pending work."""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from powjobs.pow.hashing import ACTION_PREFIXES


@dataclass(slots=True)
class WorkInfo:
    block_start: Optional[int] = None
    difficulty_range: Optional[int] = None
    target_id: Optional[str] = None
    error: Optional[str] = None


class WorkInfoLookup(Protocol):
    def lookup(self, entity_id: str, action_type: str) -> WorkInfo:
        ...


def _as_int(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SqliteWorkInfoLookup:
    """Reads the ``work`` table of a local replica of the game indexer.

    Columns: ``object_id``, ``category`` (BUILD/MINE/REFINE/RAID),
    ``block_start``, ``difficulty_target``, ``target_id``.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    def lookup(self, entity_id: str, action_type: str) -> WorkInfo:
        category = ACTION_PREFIXES.get(action_type)
        if category is None:
            return WorkInfo(error=f"Unknown action type: {action_type}")
        if not self._path.exists():
            return WorkInfo(error=f"Work database not found: {self._path}")
        conn = sqlite3.connect(self._path)
        try:
            row = conn.execute(
                "SELECT block_start, difficulty_target, target_id FROM work "
                "WHERE object_id = ? AND category = ? ORDER BY block_start DESC LIMIT 1",
                (entity_id, category),
            ).fetchone()
        except sqlite3.Error as exc:
            return WorkInfo(error=f"Work lookup failed: {exc}")
        finally:
            conn.close()
        if row is None:
            return WorkInfo(error=f"No work record found for entity {entity_id} with category {category}")
        block_start, difficulty, target_id = row
        return WorkInfo(
            block_start=_as_int(block_start),
            difficulty_range=_as_int(difficulty),
            target_id=str(target_id) if target_id else None,
        )
