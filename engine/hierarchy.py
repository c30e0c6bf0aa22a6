from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Optional

DEFAULT_GRADE = 1
BASE_PERMISSIONS = ("basic_access",)


@dataclass(frozen=True)
class RankDefinition:
    name: str
    grade: int
    permissions: tuple[str, ...] = field(default_factory=tuple)


DEFAULT_RANKS = (
    RankDefinition("實習生", 1, ("basic_access",)),
    RankDefinition("員工", 2, ("basic_access", "employee_functions")),
    RankDefinition("副店長", 3, ("basic_access", "employee_functions", "assistant_manager_functions")),
    RankDefinition(
        "店長",
        4,
        ("basic_access", "employee_functions", "assistant_manager_functions", "manager_functions"),
    ),
)


class PositionLadder:
    """
    Ordered ranks, lowest first. Positions that are not on the ladder map to
    themselves for successor/predecessor lookups and get the default grade.
    """

    def __init__(self, ranks: list[RankDefinition] | tuple[RankDefinition, ...]):
        names = [r.name for r in ranks]
        if len(set(names)) != len(names):
            raise ValueError("Position ladder contains duplicate rank names")
        self._ranks = tuple(ranks)
        self._index = {r.name: i for i, r in enumerate(self._ranks)}

    @property
    def ranks(self) -> tuple[RankDefinition, ...]:
        return self._ranks

    def _rank(self, position: str) -> Optional[RankDefinition]:
        i = self._index.get(str(position or "").strip())
        return self._ranks[i] if i is not None else None

    def successor(self, position: str) -> str:
        p = str(position or "").strip()
        i = self._index.get(p)
        if i is None or i + 1 >= len(self._ranks):
            return p
        return self._ranks[i + 1].name

    def predecessor(self, position: str) -> str:
        p = str(position or "").strip()
        i = self._index.get(p)
        if i is None or i == 0:
            return p
        return self._ranks[i - 1].name

    def grade_of(self, position: str) -> int:
        rank = self._rank(position)
        return rank.grade if rank else DEFAULT_GRADE

    def permissions_for(self, position: str) -> list[str]:
        rank = self._rank(position)
        return list(rank.permissions) if rank else list(BASE_PERMISSIONS)


DEFAULT_LADDER = PositionLadder(DEFAULT_RANKS)


def _rank_from_dict(obj: Any) -> RankDefinition:
    if not isinstance(obj, dict):
        raise ValueError("Each ladder rank must be an object")
    name = str(obj.get("name") or "").strip()
    if not name:
        raise ValueError("Ladder rank is missing a name")
    try:
        grade = int(obj.get("grade"))
    except Exception:
        raise ValueError(f"Ladder rank {name!r} has an invalid grade")
    perms = obj.get("permissions") or list(BASE_PERMISSIONS)
    if not isinstance(perms, list):
        raise ValueError(f"Ladder rank {name!r} permissions must be a list")
    return RankDefinition(name=name, grade=grade, permissions=tuple(str(p) for p in perms))


def ladder_from_json(raw: str) -> PositionLadder:
    obj = json.loads(raw)
    if isinstance(obj, dict):
        obj = obj.get("ranks")
    if not isinstance(obj, list) or not obj:
        raise ValueError("Position ladder must be a non-empty list of ranks")
    return PositionLadder([_rank_from_dict(x) for x in obj])


def load_ladder(cfg) -> PositionLadder:
    raw = str(getattr(cfg, "POSITION_LADDER_JSON", "") or "").strip()
    if raw:
        return ladder_from_json(raw)

    path = str(getattr(cfg, "POSITION_LADDER_FILE", "") or "").strip()
    if path:
        if not os.path.isfile(path):
            raise RuntimeError(f"POSITION_LADDER_FILE not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            return ladder_from_json(f.read())

    return DEFAULT_LADDER
