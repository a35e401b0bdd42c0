from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Literal

Phase = Literal["discussion", "implementation"]
Classification = Literal["completion", "design", "unclear"]

PHASES: tuple[str, ...] = ("discussion", "implementation")
NEXT_TOPIC = "What should we build next?"
WORD_PATTERN = re.compile(r"[a-z][a-z']*")


@dataclass(frozen=True, slots=True)
class ClassificationPolicy:
    """Keyword lists used to tell "work is done" apart from "design agreed"."""

    completion_terms: frozenset[str] = frozenset(
        {
            "implemented",
            "done",
            "complete",
            "completed",
            "finished",
            "shipped",
            "verified",
            "pass",
            "passes",
            "passing",
            "merged",
            "deployed",
            "fixed",
            "landed",
            "works",
        }
    )
    design_terms: frozenset[str] = frozenset(
        {
            "propose",
            "proposal",
            "recommend",
            "should",
            "plan",
            "design",
            "approach",
            "build",
            "consider",
            "suggest",
            "idea",
            "could",
            "next",
            "architecture",
        }
    )


DEFAULT_POLICY = ClassificationPolicy()


def classify_decisions(
    decisions: Sequence[str],
    *,
    window: int = 3,
    policy: ClassificationPolicy = DEFAULT_POLICY,
) -> Classification:
    """Classify the most recent decisions; later decisions weigh more than earlier ones."""
    recent = list(decisions)[-window:] if window > 0 else []
    completion = 0
    design = 0
    for weight, decision in enumerate(recent, start=1):
        for word in WORD_PATTERN.findall(decision.lower()):
            if word in policy.completion_terms:
                completion += weight
            elif word in policy.design_terms:
                design += weight
    if completion > design:
        return "completion"
    if design > completion:
        return "design"
    return "unclear"


@dataclass(frozen=True, slots=True)
class PhaseState:
    phase: Phase = "discussion"
    review: str = ""
    topic: str = ""
    consensus_reached: bool = False
    signals: dict[str, str] = field(default_factory=dict)
    key_decisions: tuple[str, ...] = ()
    next_action: dict[str, str] = field(default_factory=dict)
    briefing: str = ""


@dataclass(frozen=True, slots=True)
class ConsensusReached:
    classification: Classification | None = None


@dataclass(frozen=True, slots=True)
class MutationRequested:
    actor: str
    path: str


@dataclass(frozen=True, slots=True)
class ForcePhase:
    phase: Phase
    reason: str = "manual override"


PhaseEvent = ConsensusReached | MutationRequested | ForcePhase


def execution_briefing(topic: str, key_decisions: Sequence[str]) -> str:
    lines = ["EXECUTION BRIEFING", ""]
    if topic:
        lines.append(f"Topic: {topic}")
    lines.append("Agreed decisions:")
    if key_decisions:
        lines.extend(f"- {decision}" for decision in key_decisions)
    else:
        lines.append("- (none recorded)")
    lines.append("")
    lines.append("Implement the agreed decisions. Use edit/write requests to change files.")
    return "\n".join(lines)


def transition(state: PhaseState, event: PhaseEvent) -> PhaseState:
    """Return the state that follows ``event``; the input state is never modified."""
    if isinstance(event, MutationRequested):
        if state.phase == "implementation":
            return state
        return replace(
            state,
            phase="implementation",
            review="",
            next_action={
                "type": "implement",
                "reason": f"{event.actor} requested a change to {event.path}",
                "target": event.actor,
            },
        )

    if isinstance(event, ForcePhase):
        if event.phase not in PHASES:
            raise ValueError(f"Unknown phase: {event.phase}")
        if event.phase == "implementation":
            return replace(
                state,
                phase="implementation",
                review="",
                briefing=execution_briefing(state.topic, state.key_decisions),
                next_action={"type": "implement", "reason": event.reason},
            )
        return replace(
            state,
            phase="discussion",
            review="",
            consensus_reached=False,
            next_action={"type": "discuss", "reason": event.reason},
        )

    if state.phase == "discussion":
        return replace(
            state,
            phase="implementation",
            review="code_review",
            consensus_reached=True,
            briefing=execution_briefing(state.topic, state.key_decisions),
            next_action={"type": "implement", "reason": "Consensus reached in discussion"},
        )

    if event.classification == "completion":
        return replace(
            state,
            phase="discussion",
            review="",
            topic=NEXT_TOPIC,
            consensus_reached=False,
            signals={},
            key_decisions=(),
            briefing="",
            next_action={"type": "discuss", "reason": "Implementation reported complete"},
        )
    return replace(
        state,
        review="code_review",
        consensus_reached=True,
        next_action={
            "type": "implement",
            "reason": f"Consensus classified as {event.classification or 'unclear'}",
        },
    )
