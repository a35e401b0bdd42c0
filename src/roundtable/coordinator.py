from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from roundtable.actors import (
    COORDINATOR_TARGET,
    ActorResponse,
    ActorResponseError,
    ActorRoster,
    ProjectDocument,
)
from roundtable.backends.base import BackendExecutionError
from roundtable.config import RoundtableConfig
from roundtable.consensus import ConsensusEvaluation, evaluate, record_signals
from roundtable.history import HistoryStream, RoundSummary
from roundtable.ledger import TurnLedger
from roundtable.mutations import MutationPipeline
from roundtable.phase import (
    ConsensusReached,
    ForcePhase,
    MutationRequested,
    PhaseState,
    classify_decisions,
    transition,
)
from roundtable.state.store import CoordinationState, StateStore

DECISION_EXTRACT_LENGTH = 200
HISTORY_PROMPT_LIMIT = 20

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _decision_extract(text: str) -> str:
    text = " ".join(text.split())
    for stop in (". ", "! ", "? "):
        index = text.find(stop)
        if 0 < index < DECISION_EXTRACT_LENGTH:
            return text[: index + 1]
    if len(text) > DECISION_EXTRACT_LENGTH:
        return text[:DECISION_EXTRACT_LENGTH].rstrip() + "..."
    return text


def render_briefing(state: CoordinationState) -> str:
    last_round = "This is the first round"
    if state.round_summaries:
        last_round = state.round_summaries[-1].summary
    decisions = (
        "\n".join(f"  {index}. {item}" for index, item in enumerate(state.key_decisions, start=1))
        or "  (None yet)"
    )
    signals = (
        "\n".join(f"  - {name}: {signal}" for name, signal in state.consensus_signals.items())
        or "  (No signals yet)"
    )
    actors = (
        "\n".join(
            f"  - {name}: {int(row.get('total_turns', 0))} turns, "
            f"${float(row.get('total_cost', 0.0)):.4f}"
            for name, row in state.actors.items()
        )
        or "  (No turns taken yet)"
    )
    lines = [
        f"COORDINATOR BRIEFING - ROUND #{state.round_number}",
        "",
        "PREVIOUS ROUND:",
        last_round,
        "",
        f"CURRENT PHASE: {state.phase}" + (f" ({state.review})" if state.review else ""),
        "",
        "DISCUSSION TOPIC:",
        state.topic or "(Not set)",
        "",
        "KEY DECISIONS SO FAR:",
        decisions,
        "",
        "CONSENSUS STATUS:",
        signals,
        "",
        f"NEXT ACTION: {state.next_action.get('type', 'discuss')}",
        f"Reason: {state.next_action.get('reason', '')}",
        "",
        "ACTOR STATES:",
        actors,
        "",
        f"TOTAL COST SO FAR: ${state.total_cost:.4f}",
        "",
        "HUMAN NOTES:",
        state.human_note or "(None)",
    ]
    if state.phase == "implementation" and state.briefing:
        lines.extend(["", state.briefing])
    return "\n".join(lines)


@dataclass(slots=True)
class RoundResult:
    round_number: int
    start_phase: str
    end_phase: str
    end_reason: str
    diagnostic: str = ""
    turns: int = 0
    consensus: ConsensusEvaluation | None = None
    classification: str | None = None
    cost: float = 0.0
    change_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "round_number": self.round_number,
            "start_phase": self.start_phase,
            "end_phase": self.end_phase,
            "end_reason": self.end_reason,
            "diagnostic": self.diagnostic,
            "turns": self.turns,
            "consensus": self.consensus.to_dict() if self.consensus else None,
            "classification": self.classification,
            "cost": self.cost,
            "change_ids": list(self.change_ids),
        }


@dataclass(slots=True)
class _TargetDecision:
    next_actor: str | None
    self_continuation: bool = False
    end_reason: str | None = None
    diagnostic: str = ""


@dataclass(slots=True)
class _RoundContext:
    state: CoordinationState
    history: HistoryStream
    phase_state: PhaseState
    round_start: int
    round_signals: dict[str, str] = field(default_factory=dict)
    contributions: list[tuple[str, str]] = field(default_factory=list)
    fix_attempts: dict[str, int] = field(default_factory=dict)
    last_failed_author: str | None = None
    cost: float = 0.0
    turns: int = 0


class Coordinator:
    """Drives rounds of turns across the roster and persists the outcome."""

    def __init__(
        self,
        roster: ActorRoster,
        pipeline: MutationPipeline,
        store: StateStore,
        config: RoundtableConfig,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.roster = roster
        self.pipeline = pipeline
        self.store = store
        self.config = config
        self.workflow = config.workflow
        self.workflow_order = roster.validate_order(config.workflow.workflow_order)
        self.ledger = TurnLedger(
            roster.names,
            turn_limit=max(1, config.roster.turn_limit),
            max_self_passes=max(0, config.roster.max_self_passes),
        )
        self.rng = rng or random.Random(config.workflow.lottery_seed)
        self._pending_events: list[dict[str, Any]] = []

    def record_backend_event(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload["at"] = _utcnow_iso()
        self._pending_events.append(payload)

    def _flush_backend_events(self, state: CoordinationState) -> None:
        if not self._pending_events:
            return
        metrics = state.metrics
        events = metrics.get("backend_events", [])
        if not isinstance(events, list):
            events = []
        for event in self._pending_events:
            events.append(event)
            if event.get("event") == "backend_retry":
                metrics["backend_retry_count"] = int(metrics.get("backend_retry_count", 0)) + 1
            if event.get("event") == "backend_fallback_success":
                metrics["backend_fallback_count"] = (
                    int(metrics.get("backend_fallback_count", 0)) + 1
                )
        metrics["backend_events"] = events
        self._pending_events.clear()

    def load_state(self) -> CoordinationState:
        state = self.store.load_or_default()
        self.ledger.restore(state.actors)
        self.pipeline.records = state.code_changes
        return state

    def _save_state(self, ctx: _RoundContext) -> None:
        state = ctx.state
        state.apply_phase_state(ctx.phase_state)
        state.history = ctx.history.entries
        state.code_changes = self.pipeline.records
        state.actors = self.ledger.snapshot()
        self._flush_backend_events(state)
        state.summarize(
            key_decision_window=self.workflow.key_decision_window,
            history_tail=self.workflow.history_tail,
        )
        self.store.save(state)

    def _next_in_workflow(self, current: str, *, exclude_current: bool = False) -> str | None:
        order = self.workflow_order
        start = order.index(current) + 1 if current in order else 0
        rotated = order[start:] + order[:start]
        for name in rotated:
            if exclude_current and name == current:
                continue
            if self.ledger.can_act(name):
                return name
        return None

    def _first_actor(self, phase: str) -> str | None:
        available = self.ledger.available(self.workflow_order)
        if not available:
            return None
        if phase == "implementation":
            return available[0]
        return self.rng.choice(available)

    def _document(self, ctx: _RoundContext) -> ProjectDocument:
        ctx.state.apply_phase_state(ctx.phase_state)
        return ProjectDocument(
            content=render_briefing(ctx.state),
            phase=ctx.phase_state.phase,
            topic=ctx.phase_state.topic,
            round_number=ctx.state.round_number,
        )

    async def _invoke(self, ctx: _RoundContext, name: str) -> ActorResponse | None:
        actor = self.roster.get(name)
        available = self.ledger.available(self.workflow_order)
        try:
            response = await actor.act(
                self._document(ctx), available, ctx.history.summary(HISTORY_PROMPT_LIMIT)
            )
        except ActorResponseError as exc:
            ctx.history.append(name, "turn_status", f"Invalid response: {exc}")
            logger.warning("%s", exc)
            return None
        ctx.cost += response.cost
        return response

    async def _take_turn(self, ctx: _RoundContext, name: str) -> tuple[ActorResponse | None, dict]:
        """Run one turn for ``name``, including its read sub-loop and any file change."""
        outcome = {"reads": 0, "edits": 0, "writes": 0, "notes": False, "failed": False}
        response = await self._invoke(ctx, name)

        while response is not None and response.mutation is not None:
            if response.mutation.action != "read":
                break
            if outcome["reads"] >= self.workflow.max_reads_per_turn:
                ctx.history.append(
                    name,
                    "read_limit_reached",
                    f"Read limit of {self.workflow.max_reads_per_turn} reached for this turn.",
                )
                response.mutation = None
                break
            result = self.pipeline.read(
                response.mutation.path,
                response.mutation.reason,
                ctx.history.recent(self.pipeline.redundant_read_window),
            )
            outcome["reads"] += 1
            ctx.history.append(
                name,
                result.history_action,
                result.content if result.ok and result.content is not None else result.message,
                path=result.path,
            )
            response = await self._invoke(ctx, name)

        if response is None:
            return None, outcome

        if response.mutation_error:
            ctx.history.append(
                name, "turn_status", f"Ignored file action: {response.mutation_error}"
            )
        if response.reasoning:
            ctx.contributions.append((name, response.reasoning))
            ctx.history.append(name, "message", response.reasoning)
        if response.consensus:
            ctx.round_signals[name] = response.consensus
            ctx.phase_state = replace(
                ctx.phase_state,
                signals=record_signals(ctx.phase_state.signals, {name: response.consensus}),
            )

        if response.notes:
            result = self.pipeline.append_notes(name, response.notes, phase=ctx.phase_state.phase)
            ctx.history.append(
                name,
                "notes_updated" if result.ok else result.history_action,
                result.message,
                path=result.path,
            )
            outcome["notes"] = result.ok

        mutation = response.mutation
        if mutation is not None and mutation.action in {"edit", "write"}:
            if (
                ctx.phase_state.phase == "discussion"
                and self.workflow.auto_promote_on_mutation
                and not self.pipeline.is_own_notes(name, mutation.path)
            ):
                ctx.phase_state = transition(
                    ctx.phase_state, MutationRequested(name, mutation.path)
                )
                ctx.history.append(
                    name,
                    "phase_change",
                    f"Switched to implementation: {name} requested a change to {mutation.path}.",
                )
                logger.info(
                    "Round %d promoted to implementation by %s", ctx.state.round_number, name
                )
            result = self.pipeline.apply(
                mutation,
                actor=name,
                phase=ctx.phase_state.phase,
                recent_history=ctx.history.recent(self.pipeline.redundant_read_window),
            )
            ctx.history.append(
                name,
                result.history_action,
                result.message,
                path=result.path,
                change_id=result.record.id if result.record else None,
            )
            if result.ok:
                outcome["edits" if mutation.action == "edit" else "writes"] += 1
                if ctx.last_failed_author == name:
                    ctx.last_failed_author = None
            else:
                outcome["failed"] = True
                ctx.last_failed_author = name
        return response, outcome

    def _resolve_target(
        self, ctx: _RoundContext, name: str, response: ActorResponse
    ) -> _TargetDecision:
        phase = ctx.phase_state.phase
        if response.yield_to_coordinator:
            if phase == "discussion":
                return _TargetDecision(None, end_reason="yielded", diagnostic=f"{name} yielded")
            ctx.history.append(
                name, "turn_status", "Yielding to the coordinator is ignored during implementation."
            )
            return self._workflow_decision(name)

        if (
            response.return_for_fix
            and ctx.last_failed_author
            and ctx.last_failed_author != name
            and self.ledger.can_act(ctx.last_failed_author)
        ):
            ctx.history.append(
                name, "review_and_modify", f"Returned work to {ctx.last_failed_author} for a fix."
            )
            return _TargetDecision(ctx.last_failed_author)

        raw_target = response.target.strip()
        if not raw_target:
            if phase == "implementation":
                return self._workflow_decision(name)
            return _TargetDecision(
                None, end_reason="invalid_target", diagnostic=f"{name} did not name a target."
            )

        target = self.roster.lookup(raw_target)
        if target == name:
            if self.ledger.can_self_continue(name):
                return _TargetDecision(name, self_continuation=True)
            redirect = self._next_in_workflow(name, exclude_current=True)
            if redirect is not None:
                ctx.history.append(
                    name,
                    "turn_status",
                    f"Self-continuation limit reached; control passes to {redirect}.",
                )
                return _TargetDecision(redirect)
            if self.ledger.can_act(name):
                logger.warning("%s hit the self-continuation limit; nobody else can act", name)
                ctx.history.append(
                    name, "turn_status", "Self-continuation limit reached; nobody else can act."
                )
                return _TargetDecision(name, self_continuation=True)
            return _TargetDecision(None, end_reason="no_available_targets")

        if target is None or not self.ledger.can_act(target):
            return _TargetDecision(
                None,
                end_reason="invalid_target",
                diagnostic=f"{name} selected '{raw_target}', which is not an available actor.",
            )
        return _TargetDecision(target)

    def _workflow_decision(self, name: str) -> _TargetDecision:
        following = self._next_in_workflow(name)
        if following is None:
            return _TargetDecision(None, end_reason="no_available_targets")
        return _TargetDecision(following, self_continuation=following == name)

    def _update_key_decisions(self, ctx: _RoundContext) -> None:
        latest: dict[str, str] = {}
        for name, text in ctx.contributions:
            if ctx.round_signals.get(name) == "agree":
                latest[name] = text
        if latest:
            new_items = [f"{name}: {_decision_extract(text)}" for name, text in latest.items()]
        else:
            new_items = [
                f"{name}: {_decision_extract(text)}" for name, text in ctx.contributions[-2:]
            ]
        if not new_items:
            return
        combined = list(ctx.phase_state.key_decisions) + new_items
        ctx.phase_state = replace(
            ctx.phase_state,
            key_decisions=tuple(combined[-self.workflow.key_decision_window :]),
        )

    def _close_round(
        self, ctx: _RoundContext, start_phase: str
    ) -> tuple[ConsensusEvaluation, str | None]:
        self._update_key_decisions(ctx)
        evaluation = evaluate(ctx.phase_state.signals, len(self.roster))
        classification: str | None = None

        if ctx.phase_state.phase == "discussion" and evaluation.reached:
            ctx.phase_state = transition(ctx.phase_state, ConsensusReached())
            ctx.history.append(
                COORDINATOR_TARGET, "phase_change", f"Consensus reached ({evaluation.rule})."
            )
        elif start_phase == "implementation" and ctx.round_signals and evaluation.reached:
            classification = classify_decisions(
                ctx.phase_state.key_decisions, window=self.workflow.classification_window
            )
            previous = ctx.phase_state.phase
            ctx.phase_state = transition(ctx.phase_state, ConsensusReached(classification))
            if ctx.phase_state.phase != previous:
                ctx.history.append(
                    COORDINATOR_TARGET,
                    "phase_change",
                    "Implementation reported complete; returning to discussion.",
                )
        elif evaluation.near_miss:
            logger.info(
                "Near consensus in round %d: %s", ctx.state.round_number, evaluation.counts
            )
        return evaluation, classification

    async def run_round(self) -> RoundResult:
        state = self.load_state()
        state.round_number += 1
        self.ledger.reset_for_new_round()
        history = HistoryStream(state.history)
        ctx = _RoundContext(
            state=state,
            history=history,
            phase_state=state.phase_state(),
            round_start=len(history),
        )
        start_phase = ctx.phase_state.phase
        changes_before = len(self.pipeline.records)
        logger.info("Starting round %d in %s", state.round_number, start_phase)

        end_reason = ""
        diagnostic = ""
        current = self._first_actor(start_phase)
        self_continuation = False
        if current is None:
            end_reason = "no_available_targets"

        while current is not None:
            if ctx.turns >= self.workflow.max_turns_per_round:
                end_reason = "turn_cap"
                diagnostic = f"Turn cap of {self.workflow.max_turns_per_round} reached."
                break

            cost_before = ctx.cost
            try:
                response, outcome = await self._take_turn(ctx, current)
            except BackendExecutionError as exc:
                ctx.history.append(current, "turn_status", f"Actor call failed: {exc}")
                ctx.state.total_cost += ctx.cost
                self._save_state(ctx)
                raise

            produced = bool(outcome["edits"] or outcome["writes"])
            self.ledger.record_turn(
                current,
                was_self_continuation=self_continuation,
                produced_mutation=produced,
                read_only=outcome["reads"] > 0 or response is None,
                updated_notes=bool(outcome["notes"]),
                reads=outcome["reads"],
                edits=outcome["edits"],
                writes=outcome["writes"],
                cost=ctx.cost - cost_before,
            )
            ctx.turns += 1

            if (
                ctx.phase_state.phase == "implementation"
                and self.ledger.unproductive_streak(current)
                >= self.workflow.unproductive_turn_limit
            ):
                self.ledger.cut_off(current, "unproductive")
                ctx.history.append(
                    current, "turn_status", f"{current} made no changes for several turns; cut off."
                )

            if ctx.history.in_error_loop(start=ctx.round_start):
                end_reason = "error_loop"
                diagnostic = "The same failure repeated three times; manual intervention needed."
                break
            if ctx.phase_state.phase == "discussion" and evaluate(
                ctx.phase_state.signals, len(self.roster)
            ).reached:
                end_reason = "consensus"
                break
            if not self.ledger.available():
                end_reason = "no_available_targets"
                break

            if response is None:
                decision = self._workflow_decision(current)
            elif (
                outcome["failed"]
                and ctx.fix_attempts.get(current, 0) < self.workflow.max_fix_attempts
                and self.ledger.can_act(current)
            ):
                ctx.fix_attempts[current] = ctx.fix_attempts.get(current, 0) + 1
                decision = _TargetDecision(current)
            else:
                decision = self._resolve_target(ctx, current, response)

            if decision.end_reason:
                end_reason = decision.end_reason
                diagnostic = decision.diagnostic
                break
            current = decision.next_actor
            self_continuation = decision.self_continuation

        if diagnostic:
            ctx.history.append(COORDINATOR_TARGET, "turn_status", diagnostic)
        evaluation, classification = self._close_round(ctx, start_phase)
        change_ids = [record.id for record in self.pipeline.records[changes_before:]]
        summary = (
            f"Round {state.round_number} ({start_phase} -> {ctx.phase_state.phase}): "
            f"ended by {end_reason}; {ctx.turns} turns, {len(change_ids)} file changes"
        )
        state.total_cost += ctx.cost
        state.round_summaries.append(
            RoundSummary(
                round_number=state.round_number,
                phase=ctx.phase_state.phase,
                summary=summary,
                cost=ctx.cost,
            )
        )
        self._save_state(ctx)
        logger.info(summary)
        return RoundResult(
            round_number=state.round_number,
            start_phase=start_phase,
            end_phase=ctx.phase_state.phase,
            end_reason=end_reason,
            diagnostic=diagnostic,
            turns=ctx.turns,
            consensus=evaluation,
            classification=classification,
            cost=ctx.cost,
            change_ids=change_ids,
        )

    async def run(self, rounds: int = 1) -> list[RoundResult]:
        results: list[RoundResult] = []
        for _ in range(max(0, rounds)):
            results.append(await self.run_round())
        return results

    def set_note(self, text: str) -> CoordinationState:
        state = self.store.load_or_default()
        state.human_note = text.strip()
        self.store.save(state)
        return state

    def force_phase(self, phase: str) -> CoordinationState:
        state = self.store.load_or_default()
        forced = transition(state.phase_state(), ForcePhase(phase))  # type: ignore[arg-type]
        state.apply_phase_state(forced)
        self.store.save(state)
        return state

    def status(self, verbose: bool = False) -> dict[str, Any]:
        state = self.store.load_or_default()
        evaluation = evaluate(state.consensus_signals, len(self.roster))
        changes = [record.to_dict() for record in state.code_changes]
        payload: dict[str, Any] = {
            "round_number": state.round_number,
            "phase": state.phase,
            "review": state.review,
            "topic": state.topic,
            "consensus": evaluation.to_dict(),
            "consensus_signals": dict(state.consensus_signals),
            "key_decisions": list(state.key_decisions),
            "next_action": dict(state.next_action),
            "total_cost": state.total_cost,
            "human_note": state.human_note,
            "actors": state.actors,
            "recent_changes": changes[-5:],
            "recent_rounds": [item.to_dict() for item in state.round_summaries[-5:]],
        }
        if verbose:
            payload["code_changes"] = changes
            payload["history"] = [entry.to_dict() for entry in state.history]
            payload["metrics"] = state.metrics
        return payload
