from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any


@dataclass(slots=True)
class ActorTurns:
    name: str
    turns_used: int = 0
    self_passes: int = 0
    reads: int = 0
    edits: int = 0
    writes: int = 0
    self_pass_total: int = 0
    unproductive_streak: int = 0
    cut_off_reason: str | None = None
    total_turns: int = 0
    total_cost: float = 0.0

    def reset_round(self) -> None:
        self.turns_used = 0
        self.self_passes = 0
        self.reads = 0
        self.edits = 0
        self.writes = 0
        self.self_pass_total = 0
        self.unproductive_streak = 0
        self.cut_off_reason = None

    def productivity_score(self) -> float:
        """Score in [0, 1]: high for actors that change files, low for read/self-pass loops."""
        productive = self.edits + self.writes
        reads_per_turn = self.reads / self.turns_used if self.turns_used else 0.0
        self_pass_ratio = self.self_pass_total / self.turns_used if self.turns_used else 0.0

        score = 0.0
        if productive > 0:
            score += min(productive / 3, 1.0) * 0.6
            if reads_per_turn < 2:
                score += 0.2
        else:
            if reads_per_turn > 3:
                score -= 0.3
            if self_pass_ratio > 0.5:
                score -= 0.2
        return max(0.0, min(1.0, score))


class TurnLedger:
    """Per-round turn accounting for a fixed roster."""

    def __init__(
        self,
        names: Iterable[str],
        *,
        turn_limit: int = 6,
        max_self_passes: int = 3,
    ) -> None:
        self.turn_limit = turn_limit
        self.max_self_passes = max_self_passes
        self._actors: dict[str, ActorTurns] = {name: ActorTurns(name=name) for name in names}

    def __contains__(self, name: object) -> bool:
        return name in self._actors

    def get(self, name: str) -> ActorTurns:
        return self._actors[name]

    @property
    def names(self) -> list[str]:
        return list(self._actors)

    def can_act(self, name: str) -> bool:
        actor = self._actors.get(name)
        if actor is None or actor.cut_off_reason is not None:
            return False
        return actor.turns_used < self.turn_limit

    def can_self_continue(self, name: str) -> bool:
        actor = self._actors.get(name)
        if actor is None:
            return False
        return actor.self_passes < self.max_self_passes and self.can_act(name)

    def available(self, order: Iterable[str] | None = None) -> list[str]:
        names = list(order) if order is not None else self.names
        return [name for name in names if self.can_act(name)]

    def record_turn(
        self,
        name: str,
        *,
        was_self_continuation: bool,
        produced_mutation: bool,
        read_only: bool = False,
        updated_notes: bool = False,
        reads: int = 0,
        edits: int = 0,
        writes: int = 0,
        cost: float = 0.0,
    ) -> ActorTurns:
        actor = self._actors[name]
        actor.turns_used += 1
        actor.total_turns += 1
        actor.total_cost += cost
        actor.reads += reads
        actor.edits += edits
        actor.writes += writes
        if was_self_continuation:
            actor.self_passes += 1
            actor.self_pass_total += 1
        else:
            actor.self_passes = 0
        if read_only and not produced_mutation and not updated_notes:
            actor.unproductive_streak += 1
        else:
            actor.unproductive_streak = 0
        return actor

    def cut_off(self, name: str, reason: str) -> None:
        self._actors[name].cut_off_reason = reason

    def unproductive_streak(self, name: str) -> int:
        return self._actors[name].unproductive_streak

    def reset_for_new_round(self) -> None:
        for actor in self._actors.values():
            actor.reset_round()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        payload: dict[str, dict[str, Any]] = {}
        for name, actor in self._actors.items():
            row = asdict(actor)
            row["productivity_score"] = round(actor.productivity_score(), 3)
            payload[name] = row
        return payload

    def restore(self, snapshot: dict[str, Any]) -> None:
        """Restore cumulative totals; per-round counters always start fresh."""
        for name, row in snapshot.items():
            actor = self._actors.get(name)
            if actor is None or not isinstance(row, dict):
                continue
            actor.total_turns = int(row.get("total_turns", 0) or 0)
            actor.total_cost = float(row.get("total_cost", 0.0) or 0.0)
