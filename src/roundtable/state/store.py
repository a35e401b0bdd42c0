from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from roundtable import __version__
from roundtable.history import HistoryEntry, RoundSummary, archive_round_summaries
from roundtable.mutations import CodeChangeRecord
from roundtable.phase import PhaseState

MAX_ROUND_SUMMARIES = 20
MAX_CODE_CHANGES = 50
MAX_BACKEND_EVENTS = 200

logger = logging.getLogger(__name__)


class CoordinationStateError(RuntimeError):
    """Raised when the persisted coordination state cannot be read or written."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class CoordinationState:
    version: str = __version__
    round_number: int = 0
    phase: str = "discussion"
    review: str = ""
    topic: str = ""
    consensus_reached: bool = False
    consensus_signals: dict[str, str] = field(default_factory=dict)
    key_decisions: list[str] = field(default_factory=list)
    next_action: dict[str, str] = field(default_factory=dict)
    briefing: str = ""
    code_changes: list[CodeChangeRecord] = field(default_factory=list)
    actors: dict[str, dict[str, Any]] = field(default_factory=dict)
    total_cost: float = 0.0
    human_note: str = ""
    round_summaries: list[RoundSummary] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    def phase_state(self) -> PhaseState:
        return PhaseState(
            phase="implementation" if self.phase == "implementation" else "discussion",
            review=self.review,
            topic=self.topic,
            consensus_reached=self.consensus_reached,
            signals=dict(self.consensus_signals),
            key_decisions=tuple(self.key_decisions),
            next_action=dict(self.next_action),
            briefing=self.briefing,
        )

    def apply_phase_state(self, phase_state: PhaseState) -> None:
        self.phase = phase_state.phase
        self.review = phase_state.review
        self.topic = phase_state.topic
        self.consensus_reached = phase_state.consensus_reached
        self.consensus_signals = dict(phase_state.signals)
        self.key_decisions = list(phase_state.key_decisions)
        self.next_action = dict(phase_state.next_action)
        self.briefing = phase_state.briefing

    def summarize(self, *, key_decision_window: int = 10, history_tail: int = 50) -> None:
        """Trim unbounded collections before the state is written."""
        self.round_summaries = archive_round_summaries(self.round_summaries, MAX_ROUND_SUMMARIES)
        self.code_changes = self.code_changes[-MAX_CODE_CHANGES:]
        self.key_decisions = self.key_decisions[-key_decision_window:]
        self.history = self.history[-history_tail:] if history_tail > 0 else []
        events = self.metrics.get("backend_events")
        if isinstance(events, list):
            self.metrics["backend_events"] = events[-MAX_BACKEND_EVENTS:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "round_number": self.round_number,
            "phase": self.phase,
            "review": self.review,
            "topic": self.topic,
            "consensus_reached": self.consensus_reached,
            "consensus_signals": dict(self.consensus_signals),
            "key_decisions": list(self.key_decisions),
            "next_action": dict(self.next_action),
            "briefing": self.briefing,
            "code_changes": [record.to_dict() for record in self.code_changes],
            "actors": dict(self.actors),
            "total_cost": round(self.total_cost, 6),
            "human_note": self.human_note,
            "round_summaries": [item.to_dict() for item in self.round_summaries],
            "history": [entry.to_dict() for entry in self.history],
            "metrics": dict(self.metrics),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CoordinationState:
        def _list(key: str) -> list[Any]:
            value = payload.get(key)
            return value if isinstance(value, list) else []

        def _dict(key: str) -> dict[str, Any]:
            value = payload.get(key)
            return value if isinstance(value, dict) else {}

        return cls(
            version=str(payload.get("version") or __version__),
            round_number=int(payload.get("round_number", 0) or 0),
            phase=str(payload.get("phase") or "discussion"),
            review=str(payload.get("review") or ""),
            topic=str(payload.get("topic") or ""),
            consensus_reached=bool(payload.get("consensus_reached", False)),
            consensus_signals={str(k): str(v) for k, v in _dict("consensus_signals").items()},
            key_decisions=[str(item) for item in _list("key_decisions")],
            next_action={str(k): str(v) for k, v in _dict("next_action").items()},
            briefing=str(payload.get("briefing") or ""),
            code_changes=[
                CodeChangeRecord.from_dict(item)
                for item in _list("code_changes")
                if isinstance(item, dict)
            ],
            actors=_dict("actors"),
            total_cost=float(payload.get("total_cost", 0.0) or 0.0),
            human_note=str(payload.get("human_note") or ""),
            round_summaries=[
                RoundSummary.from_dict(item)
                for item in _list("round_summaries")
                if isinstance(item, dict)
            ],
            history=[
                HistoryEntry.from_dict(item) for item in _list("history") if isinstance(item, dict)
            ],
            metrics=_dict("metrics"),
        )


class StateStore:
    """Single JSON file holding the coordination state; the last successful save wins."""

    SCHEMA_VERSION = 1
    FILE_NAME = "coordination.json"

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.path = state_dir / self.FILE_NAME

    def exists(self) -> bool:
        return self.path.exists()

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or _utcnow_iso(),
                "data": raw_payload.get("data") or {},
            }
        # A bare state document written by hand or by an older release.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": _utcnow_iso(),
            "data": raw_payload if isinstance(raw_payload, dict) else {},
        }

    def get_envelope(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CoordinationStateError(
                f"State file {self.path} is not valid JSON: {exc}"
            ) from exc
        return self._normalize_envelope(raw)

    def revision(self) -> int:
        envelope = self.get_envelope()
        return int(envelope["revision"]) if envelope else 0

    def load(self) -> CoordinationState | None:
        envelope = self.get_envelope()
        if envelope is None:
            return None
        return CoordinationState.from_dict(envelope["data"])

    def load_or_default(self) -> CoordinationState:
        return self.load() or CoordinationState()

    def save(self, state: CoordinationState, expected_revision: int | None = None) -> int:
        current_revision = self.revision()
        if expected_revision is not None and expected_revision != current_revision:
            raise CoordinationStateError(
                f"State changed on disk (revision {current_revision}, "
                f"expected {expected_revision})."
            )
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": current_revision + 1,
            "updated_at": _utcnow_iso(),
            "data": state.to_dict(),
        }
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=self.state_dir,
            prefix=".coordination-",
            suffix=".json",
            delete=False,
        ) as handle:
            json.dump(envelope, handle, ensure_ascii=False, indent=2)
            temp_name = handle.name
        os.replace(temp_name, self.path)
        logger.debug("Saved coordination state revision %d", envelope["revision"])
        return int(envelope["revision"])

    def reset(self) -> bool:
        if not self.path.exists():
            return False
        self.path.unlink()
        return True
