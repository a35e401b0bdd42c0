import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from roundtable.actors import (
    ROLE_CLASSES,
    Actor,
    ActorResponse,
    ActorResponseError,
    ActorRoster,
    GuardianActor,
    ImplementerActor,
    ProjectDocument,
    UnknownActorError,
    extract_json_object,
)
from roundtable.backends.base import ActorBackend
from roundtable.config import DEFAULT_ROSTER, RosterConfig


class ScriptedBackend(ActorBackend):
    name = "scripted"

    def __init__(self, replies: list[str]) -> None:
        self.replies = list(replies)
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        self.contexts.append(context)
        yield self.replies.pop(0)


def _document() -> ProjectDocument:
    return ProjectDocument(content="COORDINATOR BRIEFING", phase="discussion", topic="Search")


def test_extract_json_object_handles_fences_prose_and_truncation() -> None:
    fenced = 'Here is my answer:\n```json\n{"target": "Sam", "consensus": "agree"}\n```'
    prose = 'I think {"target": "Alex"} is right. {"ignored": true}'
    truncated = '{"target": "Jordan", "reasoning": "the auth flow needs'

    assert extract_json_object(fenced) == {"target": "Sam", "consensus": "agree"}
    assert extract_json_object(prose) == {"target": "Alex"}
    assert extract_json_object(truncated) == {
        "target": "Jordan",
        "reasoning": "the auth flow needs",
    }
    assert extract_json_object("no json here") is None


def test_response_from_payload_parses_mutation_and_signal() -> None:
    response = ActorResponse.from_payload(
        "Morgan",
        {
            "target": "Sam",
            "reasoning": "Added the search index.",
            "consensus": "Building",
            "file_action": {
                "action": "edit",
                "path": "src/search.ts",
                "edits": [{"find": "a", "replace": "b"}],
            },
            "cost": "0.12",
        },
    )

    assert response.target == "Sam"
    assert response.consensus == "building"
    assert response.mutation is not None
    assert response.mutation.edits[0].replace == "b"
    assert response.cost == pytest.approx(0.12)
    assert response.yield_to_coordinator is False


def test_response_from_payload_records_bad_mutation_and_yield() -> None:
    response = ActorResponse.from_payload(
        "Alex",
        {"target": "Coordinator", "file_action": {"action": "write", "path": "src/a.ts"}},
    )

    assert response.mutation is None
    assert response.mutation_error is not None and "no content" in response.mutation_error
    assert response.yield_to_coordinator is True


def test_actor_act_returns_structured_response() -> None:
    backend = ScriptedBackend(['```json\n{"target": "Sam", "reasoning": "ok"}\n```'])
    actor = Actor("Alex", backend, role="UX Visionary")

    response = asyncio.run(actor.act(_document(), ["Sam", "Morgan"], []))

    assert response.actor == "Alex"
    assert response.target == "Sam"
    assert backend.contexts[0]["available_targets"] == ["Sam", "Morgan"]
    assert backend.contexts[0]["document"]["topic"] == "Search"


def test_actor_retries_unparseable_reply_then_fails() -> None:
    recovered = Actor("Sam", ScriptedBackend(["thinking...", '{"target": "Alex"}']))
    broken = Actor("Sam", ScriptedBackend(["nope", "still nope"]), parse_attempts=2)

    assert asyncio.run(recovered.act(_document(), ["Alex"], [])).target == "Alex"
    with pytest.raises(ActorResponseError, match="did not return a JSON response") as excinfo:
        asyncio.run(broken.act(_document(), ["Alex"], []))
    assert excinfo.value.actor == "Sam"
    assert excinfo.value.raw == "still nope"


def test_system_prompt_prefers_prompt_file(tmp_path: Path) -> None:
    (tmp_path / "jordan.md").write_text("You guard the codebase.\n", encoding="utf-8")

    from_file = GuardianActor("Jordan", ScriptedBackend([]), prompt_dir=tmp_path)
    fallback = GuardianActor("Jordan", ScriptedBackend([]))

    assert from_file.system_prompt == "You guard the codebase."
    assert fallback.system_prompt.startswith("You are Jordan, the team's Guardian.")


def test_roster_builds_role_classes() -> None:
    roster = ActorRoster.build(RosterConfig().parsed_members(), ScriptedBackend([]))

    assert roster.names == [entry.split(":")[0] for entry in DEFAULT_ROSTER]
    assert isinstance(roster.get("Morgan"), ImplementerActor)
    assert set(ROLE_CLASSES) == {actor.role for actor in roster}


def test_roster_lookup_and_unknown_actor() -> None:
    roster = ActorRoster.build([("Alex", "UX Visionary"), ("Sam", "Analyst")], ScriptedBackend([]))

    assert roster.lookup("alex") == "Alex"
    assert roster.lookup("Nobody") is None
    assert type(roster.get("Sam")) is Actor
    with pytest.raises(UnknownActorError, match="Unknown actor 'Nobody'. Roster: Alex, Sam"):
        roster.get("Nobody")


def test_validate_order_appends_missing_members() -> None:
    roster = ActorRoster.build(
        [("Alex", "UX Visionary"), ("Sam", "System Architect"), ("Morgan", "Guardian")],
        ScriptedBackend([]),
    )

    assert roster.validate_order(["Morgan", "Morgan", "Alex"]) == ["Morgan", "Alex", "Sam"]
    with pytest.raises(UnknownActorError):
        roster.validate_order(["Pat"])


def test_roster_rejects_duplicates() -> None:
    with pytest.raises(ValueError, match="Duplicate"):
        ActorRoster.build([("Alex", "UX Visionary"), ("Alex", "Guardian")], ScriptedBackend([]))
