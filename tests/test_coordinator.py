import asyncio
import json
import random
import shlex
import sys
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from roundtable.actors import ActorRoster
from roundtable.backends.base import ActorBackend, BackendExecutionError
from roundtable.config import RoundtableConfig
from roundtable.coordinator import Coordinator, render_briefing
from roundtable.guard import PathGuard
from roundtable.mutations import MutationPipeline
from roundtable.phase import NEXT_TOPIC
from roundtable.state import CoordinationState, StateStore
from roundtable.validator import CommandValidator

CHECKER = """
import sys
from pathlib import Path

if "BROKEN" in Path(sys.argv[1]).read_text(encoding="utf-8"):
    print("error TS1005: ';' expected.")
    sys.exit(2)
"""


class ScriptedBackend(ActorBackend):
    """Replies from a per-actor queue; an empty queue hands the turn on."""

    name = "scripted"

    def __init__(self, scripts: dict[str, list[Any]]) -> None:
        self.scripts = {name: list(replies) for name, replies in scripts.items()}
        self.calls: list[str] = []
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        actor = context["actor"]
        self.calls.append(actor)
        self.contexts.append(context)
        replies = self.scripts.get(actor)
        reply = replies.pop(0) if replies else {"target": ""}
        if isinstance(reply, Exception):
            raise reply
        yield reply if isinstance(reply, str) else json.dumps(reply)


class FirstPick(random.Random):
    def choice(self, seq: Sequence[Any]) -> Any:
        return seq[0]


def _coordinator(
    repo: Path,
    backend: ScriptedBackend,
    *,
    turn_limit: int = 6,
    state: CoordinationState | None = None,
    full_roster: bool = False,
    members: list[str] | None = None,
) -> Coordinator:
    config = RoundtableConfig.default()
    if members is not None:
        config.roster.members = members
        config.workflow.workflow_order = [entry.partition(":")[0] for entry in members]
    elif not full_roster:
        config.roster.members = [
            "Alex:UX Visionary",
            "Sam:System Architect",
            "Morgan:Implementation Specialist",
        ]
        config.workflow.workflow_order = ["Morgan", "Sam", "Alex"]
    config.roster.turn_limit = turn_limit
    checker = repo / "checker.py"
    checker.write_text(CHECKER, encoding="utf-8")
    validator = CommandValidator(
        command=f"{shlex.quote(sys.executable)} {shlex.quote(str(checker))} {{path}}",
        repo_root=repo,
        extensions=[".ts"],
    )
    store = StateStore(repo / config.state.state_dir)
    if state is not None:
        store.save(state)
    roster = ActorRoster.build(config.roster.parsed_members(), backend)
    pipeline = MutationPipeline(repo, PathGuard.from_config(config.guardrails), validator)
    return Coordinator(roster, pipeline, store, config, rng=FirstPick())


def _actions(coordinator: Coordinator, action: str) -> list[Any]:
    state = coordinator.store.load_or_default()
    return [entry for entry in state.history if entry.action == action]


def test_round_ends_when_no_actor_has_turns_left(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "Morgan": [{"target": "Sam", "reasoning": "Start with search."}],
            "Sam": [{"target": "Alex", "reasoning": "Index titles."}],
            "Alex": [{"target": "Morgan", "reasoning": "Keep it simple."}],
        }
    )
    coordinator = _coordinator(tmp_path, backend, turn_limit=1)

    result = asyncio.run(coordinator.run_round())

    assert result.end_reason == "no_available_targets"
    assert result.turns == 3
    assert backend.calls == ["Morgan", "Sam", "Alex"]
    state = coordinator.store.load_or_default()
    assert state.round_number == 1
    assert [entry.text for entry in _actions(coordinator, "message")] == [
        "Start with search.",
        "Index titles.",
        "Keep it simple.",
    ]


def test_full_roster_round_ends_after_one_turn_each(tmp_path: Path) -> None:
    order = ["Morgan", "Sam", "Jordan", "Alex", "Pierre"]
    backend = ScriptedBackend(
        {name: [{"target": order[(index + 1) % len(order)]}] for index, name in enumerate(order)}
    )
    coordinator = _coordinator(tmp_path, backend, turn_limit=1, full_roster=True)

    result = asyncio.run(coordinator.run_round())

    assert result.end_reason == "no_available_targets"
    assert backend.calls == order


def test_self_continuation_is_redirected_after_limit(tmp_path: Path) -> None:
    backend = ScriptedBackend({"Morgan": [{"target": "Morgan"}] * 4})
    coordinator = _coordinator(tmp_path, backend, turn_limit=10)

    result = asyncio.run(coordinator.run_round())

    assert backend.calls == ["Morgan"] * 4 + ["Sam"]
    assert result.end_reason == "invalid_target"
    statuses = [entry.text for entry in _actions(coordinator, "turn_status")]
    assert "Self-continuation limit reached; control passes to Sam." in statuses
    state = coordinator.store.load_or_default()
    assert state.actors["Morgan"]["turns_used"] == 4
    assert state.actors["Morgan"]["self_pass_total"] == 3


def test_invalid_target_ends_round_with_diagnostic(tmp_path: Path) -> None:
    backend = ScriptedBackend({"Morgan": [{"target": "Zed", "reasoning": "Ask Zed."}]})
    coordinator = _coordinator(tmp_path, backend)

    result = asyncio.run(coordinator.run_round())

    assert result.end_reason == "invalid_target"
    assert result.diagnostic == "Morgan selected 'Zed', which is not an available actor."
    assert result.turns == 1
    statuses = _actions(coordinator, "turn_status")
    assert statuses[-1].actor == "coordinator"
    assert statuses[-1].text == result.diagnostic


def test_yield_to_coordinator_ends_discussion_round(tmp_path: Path) -> None:
    backend = ScriptedBackend({"Morgan": [{"target": "coordinator", "reasoning": "Stuck."}]})
    coordinator = _coordinator(tmp_path, backend)

    result = asyncio.run(coordinator.run_round())

    assert result.end_reason == "yielded"
    assert result.end_phase == "discussion"


def test_discussion_consensus_moves_to_implementation(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "Morgan": [{"target": "Sam", "reasoning": "Build search first.", "consensus": "agree"}],
            "Sam": [
                {"target": "Alex", "reasoning": "Index titles. Then bodies.", "consensus": "agree"}
            ],
            "Alex": [{"target": "Morgan", "reasoning": "Agreed.", "consensus": "agree"}],
        }
    )
    coordinator = _coordinator(tmp_path, backend)

    result = asyncio.run(coordinator.run_round())

    assert result.end_reason == "consensus"
    assert result.consensus is not None and result.consensus.rule == "supermajority_agree"
    assert result.end_phase == "implementation"
    state = coordinator.store.load_or_default()
    assert state.phase == "implementation"
    assert state.review == "code_review"
    assert state.key_decisions == [
        "Morgan: Build search first.",
        "Sam: Index titles.",
        "Alex: Agreed.",
    ]
    assert "Sam: Index titles." in state.briefing
    assert "EXECUTION BRIEFING" in render_briefing(state)


def test_completion_consensus_returns_to_discussion(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "Morgan": [
                {
                    "target": "Sam",
                    "reasoning": "Implemented the search index and all tests pass.",
                    "consensus": "agree",
                }
            ],
            "Sam": [{"target": "Alex", "reasoning": "Verified, shipped.", "consensus": "agree"}],
            "Alex": [{"target": "Morgan", "reasoning": "Done, it works.", "consensus": "agree"}],
        }
    )
    start = CoordinationState(
        phase="implementation", review="code_review", topic="Search", consensus_reached=True
    )
    coordinator = _coordinator(tmp_path, backend, turn_limit=1, state=start)

    result = asyncio.run(coordinator.run_round())

    assert result.start_phase == "implementation"
    assert result.classification == "completion"
    assert result.end_phase == "discussion"
    state = coordinator.store.load_or_default()
    assert state.consensus_signals == {}
    assert state.key_decisions == []
    assert state.topic == NEXT_TOPIC


def test_read_sub_loop_is_capped(tmp_path: Path) -> None:
    for index in range(1, 7):
        (tmp_path / "docs").mkdir(exist_ok=True)
        (tmp_path / "docs" / f"n{index}.md").write_text(f"note {index}\n", encoding="utf-8")
    reads = [
        {"target": "Sam", "file_action": {"action": "read", "path": f"docs/n{index}.md"}}
        for index in range(1, 7)
    ]
    backend = ScriptedBackend({"Morgan": reads})
    coordinator = _coordinator(tmp_path, backend)

    result = asyncio.run(coordinator.run_round())

    assert backend.calls == ["Morgan"] * 6 + ["Sam"]
    assert len(_actions(coordinator, "read_success")) == 5
    assert len(_actions(coordinator, "read_limit_reached")) == 1
    state = coordinator.store.load_or_default()
    assert state.actors["Morgan"]["reads"] == 5
    assert state.actors["Morgan"]["turns_used"] == 1
    assert result.turns == 2


def test_long_file_read_reaches_actor_in_full(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    lines = [f"export const value{index} = {index};" for index in range(1, 61)]
    (tmp_path / "src/big.ts").write_text("\n".join(lines) + "\n", encoding="utf-8")
    backend = ScriptedBackend(
        {
            "Morgan": [
                {"target": "Sam", "file_action": {"action": "read", "path": "src/big.ts"}},
                {"target": "Sam", "reasoning": "Read it."},
            ]
        }
    )
    coordinator = _coordinator(tmp_path, backend, turn_limit=1)

    asyncio.run(coordinator.run_round())

    assert backend.calls[:2] == ["Morgan", "Morgan"]
    reads = [row for row in backend.contexts[1]["history"] if row["action"] == "read_success"]
    assert len(reads) == 1
    assert reads[0]["text"].endswith(" 60 | export const value60 = 60;")
    assert "(truncated)" not in reads[0]["text"]


def test_undecodable_file_read_is_a_failed_entry(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src/bin.ts").write_bytes(b"export const a = 1;\xff\xfe\n")
    backend = ScriptedBackend(
        {
            "Morgan": [
                {"target": "Sam", "file_action": {"action": "read", "path": "src/bin.ts"}},
                {"target": "Sam", "reasoning": "That file is not text."},
            ]
        }
    )
    coordinator = _coordinator(tmp_path, backend, turn_limit=1)

    result = asyncio.run(coordinator.run_round())

    assert backend.calls == ["Morgan", "Morgan", "Sam"]
    assert result.end_reason == "invalid_target"
    failures = _actions(coordinator, "read_failed")
    assert len(failures) == 1
    assert "not valid UTF-8" in failures[0].text
    assert coordinator.store.load_or_default().round_number == 1


def test_return_for_fix_hands_control_to_failed_author(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    target = tmp_path / "src/app.ts"
    target.write_text("let x = 1;\n", encoding="utf-8")

    def _edit(replace: str) -> dict[str, Any]:
        return {
            "target": "Sam",
            "file_action": {
                "action": "edit",
                "path": "src/app.ts",
                "edits": [{"find": "let x = 1;", "replace": replace}],
            },
        }

    backend = ScriptedBackend(
        {
            "Morgan": [_edit("let x = BROKEN"), _edit("let x = 2;")],
            "Sam": [{"target": "Alex", "return_for_fix": True, "reasoning": "Build is red."}],
        }
    )
    start = CoordinationState(phase="implementation", review="code_review")
    coordinator = _coordinator(tmp_path, backend, turn_limit=3, state=start)
    coordinator.workflow.max_fix_attempts = 0

    asyncio.run(coordinator.run_round())

    assert backend.calls[:3] == ["Morgan", "Sam", "Morgan"]
    assert target.read_text(encoding="utf-8") == "let x = 2;\n"
    returned = _actions(coordinator, "review_and_modify")
    assert [(entry.actor, entry.text) for entry in returned] == [
        ("Sam", "Returned work to Morgan for a fix.")
    ]


def test_self_continuation_is_forced_when_nobody_else_can_act(tmp_path: Path) -> None:
    backend = ScriptedBackend({"Morgan": [{"target": "Morgan"}] * 6})
    coordinator = _coordinator(
        tmp_path, backend, members=["Morgan:Implementation Specialist"]
    )

    result = asyncio.run(coordinator.run_round())

    assert backend.calls == ["Morgan"] * 6
    assert result.end_reason == "no_available_targets"
    statuses = [entry.text for entry in _actions(coordinator, "turn_status")]
    assert statuses.count("Self-continuation limit reached; nobody else can act.") == 2


def test_yield_is_ignored_during_implementation(tmp_path: Path) -> None:
    backend = ScriptedBackend({"Morgan": [{"target": "coordinator", "reasoning": "Over to you."}]})
    start = CoordinationState(phase="implementation", review="code_review")
    coordinator = _coordinator(tmp_path, backend, turn_limit=1, state=start)

    result = asyncio.run(coordinator.run_round())

    assert backend.calls == ["Morgan", "Sam", "Alex"]
    assert result.end_reason == "no_available_targets"
    assert result.end_phase == "implementation"
    statuses = [entry.text for entry in _actions(coordinator, "turn_status")]
    assert "Yielding to the coordinator is ignored during implementation." in statuses


def test_mutation_request_promotes_discussion(tmp_path: Path) -> None:
    write = {
        "target": "Sam",
        "reasoning": "Scaffold the module.",
        "file_action": {"action": "write", "path": "src/app.ts", "content": "export {};\n"},
    }
    backend = ScriptedBackend({"Morgan": [write]})
    coordinator = _coordinator(tmp_path, backend, turn_limit=1)

    result = asyncio.run(coordinator.run_round())

    assert result.start_phase == "discussion"
    assert result.end_phase == "implementation"
    assert len(result.change_ids) == 1
    assert (tmp_path / "src/app.ts").read_text(encoding="utf-8") == "export {};\n"
    assert _actions(coordinator, "phase_change")[0].actor == "Morgan"


def test_failed_edit_gets_a_fix_up_turn(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    target = tmp_path / "src/app.ts"
    target.write_text("let x = 1;\n", encoding="utf-8")

    def _edit(replace: str) -> dict[str, Any]:
        return {
            "target": "Sam",
            "file_action": {
                "action": "edit",
                "path": "src/app.ts",
                "edits": [{"find": "let x = 1;", "replace": replace}],
            },
        }

    backend = ScriptedBackend({"Morgan": [_edit("let x = BROKEN"), _edit("let x = 2;")]})
    start = CoordinationState(phase="implementation", review="code_review")
    coordinator = _coordinator(tmp_path, backend, turn_limit=2, state=start)

    asyncio.run(coordinator.run_round())

    assert backend.calls[:3] == ["Morgan", "Morgan", "Sam"]
    assert target.read_text(encoding="utf-8") == "let x = 2;\n"
    state = coordinator.store.load_or_default()
    assert [record.status for record in state.code_changes] == ["failed", "validated"]
    assert state.code_changes[0].failed_artifact is not None


def test_repeated_failure_ends_round_as_error_loop(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src/app.ts").write_text("let x = 1;\n", encoding="utf-8")
    edit = {
        "target": "Sam",
        "file_action": {
            "action": "edit",
            "path": "src/app.ts",
            "edits": [{"find": "let y = 1;", "replace": "let y = 2;"}],
        },
    }
    backend = ScriptedBackend({"Morgan": [edit] * 5})
    start = CoordinationState(phase="implementation", review="code_review")
    coordinator = _coordinator(tmp_path, backend, state=start)

    result = asyncio.run(coordinator.run_round())

    assert result.end_reason == "error_loop"
    assert backend.calls == ["Morgan"] * 3
    assert len(_actions(coordinator, "edit_failed")) == 3


def test_unparseable_reply_passes_turn_on(tmp_path: Path) -> None:
    backend = ScriptedBackend({"Morgan": ["not json", "still not json"]})
    coordinator = _coordinator(tmp_path, backend, turn_limit=1)

    result = asyncio.run(coordinator.run_round())

    assert backend.calls[:3] == ["Morgan", "Morgan", "Sam"]
    assert result.end_reason == "invalid_target"
    assert _actions(coordinator, "turn_status")[0].text.startswith("Invalid response")


def test_backend_failure_is_fatal_and_state_is_saved(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "Morgan": [{"target": "Sam", "reasoning": "Over to Sam."}],
            "Sam": [BackendExecutionError("All actor call attempts failed.", retriable=False)],
        }
    )
    coordinator = _coordinator(tmp_path, backend)

    with pytest.raises(BackendExecutionError):
        asyncio.run(coordinator.run_round())

    state = coordinator.store.load_or_default()
    assert state.round_number == 1
    assert state.history[-1].actor == "Sam"
    assert state.history[-1].text.startswith("Actor call failed")


def test_state_accumulates_across_rounds(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "Morgan": [{"target": "Sam", "cost": 0.25}] * 2,
            "Sam": [{"target": "Alex", "cost": 0.25}] * 2,
        }
    )
    coordinator = _coordinator(tmp_path, backend, turn_limit=1)

    results = asyncio.run(coordinator.run(2))

    assert [result.round_number for result in results] == [1, 2]
    state = coordinator.store.load_or_default()
    assert state.round_number == 2
    assert state.total_cost == pytest.approx(1.0)
    assert state.actors["Morgan"]["total_turns"] == 2
    assert state.actors["Morgan"]["turns_used"] == 1
    assert len(state.round_summaries) == 2


def test_note_force_phase_and_status(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path, ScriptedBackend({}))

    coordinator.set_note("Focus on search.")
    coordinator.force_phase("implementation")
    status = coordinator.status(verbose=True)

    assert status["phase"] == "implementation"
    assert status["human_note"] == "Focus on search."
    assert status["consensus"]["reached"] is False
    assert "history" in status
    with pytest.raises(ValueError):
        coordinator.force_phase("review")
