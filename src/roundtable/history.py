from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

FAILURE_ACTIONS = {"read_failed", "edit_failed", "write_failed"}
MUTATION_SUCCESS_ACTIONS = {"edit_success", "write_success"}
MAX_SUMMARY_TEXT = 500
UNTRUNCATED_ACTIONS = {"read_success"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class HistoryEntry:
    actor: str
    action: str
    text: str = ""
    path: str | None = None
    change_id: str | None = None
    at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEntry:
        return cls(
            actor=str(payload.get("actor", "")),
            action=str(payload.get("action", "")),
            text=str(payload.get("text", "")),
            path=payload.get("path"),
            change_id=payload.get("change_id"),
            at=str(payload.get("at") or _utcnow_iso()),
        )


@dataclass(slots=True)
class RoundSummary:
    round_number: int
    phase: str
    summary: str
    cost: float = 0.0
    at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RoundSummary:
        return cls(
            round_number=int(payload.get("round_number", 0)),
            phase=str(payload.get("phase", "")),
            summary=str(payload.get("summary", "")),
            cost=float(payload.get("cost", 0.0) or 0.0),
            at=str(payload.get("at") or _utcnow_iso()),
        )


class HistoryStream:
    """Ordered log of actor actions, shared with every actor as context."""

    def __init__(self, entries: Iterable[HistoryEntry] | None = None) -> None:
        self._entries: list[HistoryEntry] = list(entries or [])

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def append(
        self,
        actor: str,
        action: str,
        text: str = "",
        *,
        path: str | None = None,
        change_id: str | None = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(actor=actor, action=action, text=text, path=path, change_id=change_id)
        self._entries.append(entry)
        return entry

    def recent(self, limit: int) -> list[HistoryEntry]:
        if limit <= 0:
            return []
        return self._entries[-limit:]

    def summary(self, limit: int = 20) -> list[dict[str, Any]]:
        """Compact view of the most recent entries for actor prompts.

        Long texts are cut short, except file reads, which are passed in full.
        """
        rows: list[dict[str, Any]] = []
        for entry in self.recent(limit):
            text = entry.text
            if entry.action not in UNTRUNCATED_ACTIONS and len(text) > MAX_SUMMARY_TEXT:
                text = text[:MAX_SUMMARY_TEXT] + "\n... (truncated)"
            row: dict[str, Any] = {"actor": entry.actor, "action": entry.action, "text": text}
            if entry.path:
                row["path"] = entry.path
            rows.append(row)
        return rows

    def in_error_loop(self, repeat: int = 3, *, start: int = 0) -> bool:
        """True when the last ``repeat`` failures share action and path with no success since."""
        failures: list[tuple[str, str]] = []
        for entry in reversed(self._entries[start:]):
            if entry.action in MUTATION_SUCCESS_ACTIONS:
                break
            if entry.action in FAILURE_ACTIONS:
                failures.append((entry.action, entry.path or entry.text))
                if len(failures) >= repeat:
                    break
        return len(failures) >= repeat and len(set(failures)) == 1


def archive_round_summaries(
    summaries: list[RoundSummary], keep: int = 20
) -> list[RoundSummary]:
    if len(summaries) <= keep:
        return list(summaries)
    to_remove = len(summaries) - keep
    old = summaries[:to_remove]
    archived = RoundSummary(
        round_number=0,
        phase="archived",
        summary=(
            f"[Archived {to_remove} old round(s): rounds "
            f"{old[0].round_number}-{old[-1].round_number}]"
        ),
        cost=sum(item.cost for item in old),
        at=old[0].at,
    )
    return [archived, *summaries[to_remove:]]
