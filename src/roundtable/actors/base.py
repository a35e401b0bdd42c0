from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from roundtable.backends.base import ActorBackend
from roundtable.consensus import Signal, normalize_signal
from roundtable.mutations import MutationRequest

FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
COORDINATOR_TARGET = "coordinator"

RESPONSE_FORMAT = """
Reply with a single JSON object and nothing else:
{
  "target": "<name of the next actor, your own name to continue, or \\"coordinator\\">",
  "reasoning": "<what you contributed this turn>",
  "consensus": "agree" | "building" | "disagree" | null,
  "file_action": null | {"action": "read", "path": "...", "reason": "..."}
               | {"action": "edit", "path": "...", "reason": "...",
                  "edits": [{"find": "...", "replace": "..."}]}
               | {"action": "write", "path": "...", "reason": "...", "content": "..."},
  "notes": null | "<text to append to your notes file>",
  "return_for_fix": false
}
""".strip()

logger = logging.getLogger(__name__)


class ActorResponseError(RuntimeError):
    """Raised when an actor's reply cannot be turned into a structured response."""

    def __init__(self, message: str, *, actor: str, raw: str = "") -> None:
        super().__init__(message)
        self.actor = actor
        self.raw = raw


@dataclass(slots=True)
class ProjectDocument:
    content: str
    phase: str
    topic: str = ""
    round_number: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "phase": self.phase,
            "topic": self.topic,
            "round_number": self.round_number,
        }


@dataclass(slots=True)
class ActorResponse:
    actor: str
    target: str = ""
    reasoning: str = ""
    consensus: Signal | None = None
    mutation: MutationRequest | None = None
    mutation_error: str | None = None
    yield_to_coordinator: bool = False
    return_for_fix: bool = False
    notes: str | None = None
    cost: float = 0.0
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, actor: str, payload: dict[str, Any]) -> ActorResponse:
        target = str(payload.get("target") or payload.get("next_speaker") or "").strip()
        mutation: MutationRequest | None = None
        mutation_error: str | None = None
        raw_action = payload.get("file_action") or payload.get("mutation")
        if isinstance(raw_action, dict):
            try:
                mutation = MutationRequest.from_dict(raw_action)
            except ValueError as exc:
                mutation_error = str(exc)
        notes = payload.get("notes")
        try:
            cost = float(payload.get("cost", 0.0) or 0.0)
        except (TypeError, ValueError):
            cost = 0.0
        return cls(
            actor=actor,
            target=target,
            reasoning=str(payload.get("reasoning") or payload.get("message") or ""),
            consensus=normalize_signal(payload.get("consensus")),
            mutation=mutation,
            mutation_error=mutation_error,
            yield_to_coordinator=bool(payload.get("yield_to_coordinator"))
            or target.lower() == COORDINATOR_TARGET,
            return_for_fix=bool(payload.get("return_for_fix")),
            notes=notes.strip() if isinstance(notes, str) and notes.strip() else None,
            cost=cost,
            raw=payload,
        )


def _close_truncated(text: str) -> str:
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack:
            stack.pop()
    repaired = text + ('"' if in_string else "")
    repaired = repaired.rstrip().rstrip(",")
    return repaired + "".join(reversed(stack))


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Recover the first JSON object from noisy model output."""
    candidates = [match.strip() for match in FENCE_PATTERN.findall(text)]
    candidates.append(text)
    decoder = json.JSONDecoder()
    for candidate in candidates:
        for index, char in enumerate(candidate):
            if char != "{":
                continue
            try:
                parsed, _ = decoder.raw_decode(candidate[index:])
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed

    start = text.find("{")
    if start == -1:
        return None
    try:
        parsed = json.loads(_close_truncated(text[start:]))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class Actor:
    role: str = "Contributor"
    fallback_prompt: str = "You are part of a small product team sharing one repository."

    def __init__(
        self,
        name: str,
        backend: ActorBackend,
        *,
        role: str | None = None,
        prompt_dir: Path | None = None,
        parse_attempts: int = 2,
    ) -> None:
        self.name = name
        self.backend = backend
        if role:
            self.role = role
        self.prompt_dir = prompt_dir
        self.parse_attempts = max(1, parse_attempts)
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if self.prompt_dir is not None:
            prompt_path = self.prompt_dir / f"{self.name.lower()}.md"
            if prompt_path.is_file():
                return prompt_path.read_text(encoding="utf-8").strip()
        return f"You are {self.name}, the team's {self.role}. {self.fallback_prompt.strip()}"

    def build_prompt(self, document: ProjectDocument, available_targets: list[str]) -> str:
        targets = ", ".join(available_targets) if available_targets else "(nobody)"
        return (
            f"It is your turn, {self.name}. Current phase: {document.phase}.\n"
            f"You may hand the turn to: {targets}.\n\n"
            f"{document.content}\n\n{RESPONSE_FORMAT}"
        )

    async def act(
        self,
        document: ProjectDocument,
        available_targets: list[str],
        history_summary: list[dict[str, Any]],
    ) -> ActorResponse:
        context = {
            "actor": self.name,
            "role": self.role,
            "document": document.to_dict(),
            "available_targets": list(available_targets),
            "history": history_summary,
        }
        prompt = self.build_prompt(document, available_targets)
        raw = ""
        for attempt in range(self.parse_attempts):
            chunks: list[str] = []
            async for chunk in self.backend.execute(self.system_prompt, prompt, context):
                chunks.append(chunk)
            raw = "".join(chunks).strip()
            payload = extract_json_object(raw)
            if payload is not None:
                return ActorResponse.from_payload(self.name, payload)
            logger.warning(
                "%s returned no parseable JSON (attempt %d/%d)",
                self.name,
                attempt + 1,
                self.parse_attempts,
            )
        raise ActorResponseError(
            f"{self.name} did not return a JSON response.", actor=self.name, raw=raw[-1000:]
        )
