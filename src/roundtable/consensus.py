from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

Signal = Literal["agree", "building", "disagree"]
SIGNALS: tuple[str, ...] = ("agree", "building", "disagree")


@dataclass(slots=True)
class ConsensusEvaluation:
    reached: bool
    rule: str | None
    counts: dict[str, int] = field(default_factory=dict)
    near_miss: bool = False

    def to_dict(self) -> dict:
        return {
            "reached": self.reached,
            "rule": self.rule,
            "counts": dict(self.counts),
            "near_miss": self.near_miss,
        }


def normalize_signal(value: object) -> Signal | None:
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    if lowered in SIGNALS:
        return lowered  # type: ignore[return-value]
    return None


def record_signals(
    state: Mapping[str, str], round_signals: Mapping[str, str]
) -> dict[str, str]:
    """Merge this round's signals into the accumulated map; the latest signal per actor wins."""
    merged = dict(state)
    for actor, value in round_signals.items():
        signal = normalize_signal(value)
        if signal is not None:
            merged[actor] = signal
    return merged


def count_signals(signals: Mapping[str, str]) -> dict[str, int]:
    counts = {name: 0 for name in SIGNALS}
    for value in signals.values():
        signal = normalize_signal(value)
        if signal is not None:
            counts[signal] += 1
    return counts


def evaluate(signals: Mapping[str, str], roster_size: int = 5) -> ConsensusEvaluation:
    counts = count_signals(signals)
    agree = counts["agree"]
    building = counts["building"]
    disagree = counts["disagree"]
    total = agree + building + disagree
    supermajority = max(1, math.ceil(0.8 * roster_size))

    rule: str | None = None
    if agree >= supermajority:
        rule = "supermajority_agree"
    elif agree >= 3 and building >= 1 and total >= 4:
        rule = "agree_with_building"
    elif agree >= 2 and building >= 2 and disagree == 0 and total >= 4:
        rule = "unopposed_building"
    elif agree >= 1 and agree + building >= 4 and disagree <= 1:
        rule = "broad_support"

    reached = rule is not None
    return ConsensusEvaluation(
        reached=reached,
        rule=rule,
        counts=counts,
        near_miss=not reached and agree >= 2,
    )


def has_consensus(signals: Mapping[str, str], roster_size: int = 5) -> bool:
    return evaluate(signals, roster_size).reached
