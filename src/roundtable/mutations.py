from __future__ import annotations

import logging
import os
import re
import uuid
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from roundtable.guard import PathGuard, PathValidationError
from roundtable.history import MUTATION_SUCCESS_ACTIONS, HistoryEntry
from roundtable.validator import CommandValidator

MutationAction = Literal["read", "edit", "write"]
ChangeStatus = Literal["pending", "validated", "failed"]

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _failure_stamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"


class EditMatchError(RuntimeError):
    """Raised when an edit's find text is missing or ambiguous."""

    def __init__(self, message: str, *, index: int, occurrences: int) -> None:
        super().__init__(message)
        self.index = index
        self.occurrences = occurrences


@dataclass(slots=True)
class EditOperation:
    find: str
    replace: str


@dataclass(slots=True)
class MutationRequest:
    action: MutationAction
    path: str
    reason: str = ""
    edits: list[EditOperation] = field(default_factory=list)
    content: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MutationRequest:
        action = str(payload.get("action", "")).strip().lower()
        if action not in {"read", "edit", "write"}:
            raise ValueError(f"Unknown file action: {action or '(missing)'}")
        path = str(payload.get("path", "")).strip()
        if not path:
            raise ValueError(f"File action '{action}' is missing a path.")
        edits: list[EditOperation] = []
        for item in payload.get("edits") or []:
            if isinstance(item, dict) and "find" in item:
                edits.append(
                    EditOperation(find=str(item["find"]), replace=str(item.get("replace", "")))
                )
        if action == "edit" and not edits:
            raise ValueError(f"Edit of '{path}' has no find/replace operations.")
        content = payload.get("content")
        if action == "write" and not isinstance(content, str):
            raise ValueError(f"Write of '{path}' has no content.")
        return cls(
            action=action,  # type: ignore[arg-type]
            path=path,
            reason=str(payload.get("reason", "")),
            edits=edits,
            content=content if isinstance(content, str) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CodeChangeRecord:
    path: str
    action: Literal["create", "edit"]
    actor: str
    reason: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: ChangeStatus = "pending"
    created_at: str = field(default_factory=_utcnow_iso)
    completed_at: str | None = None
    diagnostics: str = ""
    failed_artifact: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CodeChangeRecord:
        return cls(
            path=str(payload.get("path", "")),
            action="create" if payload.get("action") == "create" else "edit",
            actor=str(payload.get("actor", "")),
            reason=str(payload.get("reason", "")),
            id=str(payload.get("id") or uuid.uuid4().hex[:12]),
            status=payload.get("status", "pending"),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            completed_at=payload.get("completed_at"),
            diagnostics=str(payload.get("diagnostics", "")),
            failed_artifact=payload.get("failed_artifact"),
        )


@dataclass(slots=True)
class MutationResult:
    ok: bool
    action: MutationAction
    path: str
    message: str = ""
    content: str | None = None
    record: CodeChangeRecord | None = None
    fallback_used: bool = False

    @property
    def history_action(self) -> str:
        return f"{self.action}_{'success' if self.ok else 'failed'}"


def _whitespace_pattern(find: str) -> re.Pattern[str] | None:
    tokens = find.split()
    if not tokens:
        return None
    return re.compile(r"\s+".join(re.escape(token) for token in tokens))


def apply_edits(content: str, edits: Sequence[EditOperation]) -> tuple[str, bool]:
    """Apply find/replace edits in order; each find must match exactly once.

    Returns the new content and whether any edit needed whitespace-normalized matching.
    """
    fallback_used = False
    for index, edit in enumerate(edits):
        if not edit.find:
            raise EditMatchError(
                f"Edit {index + 1}: find text is empty.", index=index, occurrences=0
            )
        occurrences = content.count(edit.find)
        if occurrences == 1:
            content = content.replace(edit.find, edit.replace, 1)
            continue
        if occurrences > 1:
            raise EditMatchError(
                f"Edit {index + 1}: pattern appears {occurrences} times. Add more context.",
                index=index,
                occurrences=occurrences,
            )

        pattern = _whitespace_pattern(edit.find)
        matches = list(pattern.finditer(content)) if pattern is not None else []
        if len(matches) > 1:
            raise EditMatchError(
                f"Edit {index + 1}: pattern appears {len(matches)} times "
                "(ignoring whitespace). Add more context.",
                index=index,
                occurrences=len(matches),
            )
        if not matches:
            raise EditMatchError(
                f"Edit {index + 1}: pattern not found.", index=index, occurrences=0
            )
        match = matches[0]
        content = content[: match.start()] + edit.replace + content[match.end() :]
        fallback_used = True
    return content, fallback_used


def _unreadable(action: MutationAction, relative: str, exc: Exception) -> MutationResult:
    if isinstance(exc, UnicodeDecodeError):
        detail = f"not valid UTF-8 text (byte {exc.start})"
    else:
        detail = str(exc)
    return MutationResult(
        ok=False, action=action, path=relative, message=f"Cannot read {relative}: {detail}"
    )


def number_lines(content: str) -> str:
    lines = content.splitlines()
    width = max(3, len(str(len(lines))))
    return "\n".join(f"{number:>{width}} | {line}" for number, line in enumerate(lines, start=1))


class MutationPipeline:
    """Reads and stage-validate-commit writes for actor file requests."""

    def __init__(
        self,
        repo_root: Path,
        guard: PathGuard,
        validator: CommandValidator | None = None,
        *,
        notes_dir: str = "notes",
        records: list[CodeChangeRecord] | None = None,
        redundant_read_window: int = 10,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.guard = guard
        self.validator = validator
        self.notes_dir = notes_dir.strip("/")
        self.records: list[CodeChangeRecord] = records if records is not None else []
        self.redundant_read_window = redundant_read_window

    def notes_path(self, actor: str) -> str:
        return f"{self.notes_dir}/{actor.lower()}-notes.md"

    def is_own_notes(self, actor: str, path: str) -> bool:
        return PathGuard.normalize(path).removeprefix("./") == self.notes_path(actor)

    def _is_redundant_read(self, path: str, recent_history: Sequence[HistoryEntry]) -> bool:
        for entry in reversed(list(recent_history)[-self.redundant_read_window :]):
            if entry.path != path:
                continue
            if entry.action in MUTATION_SUCCESS_ACTIONS:
                return False
            if entry.action == "read_success":
                return True
        return False

    def read(
        self,
        path: str,
        reason: str = "",
        recent_history: Sequence[HistoryEntry] = (),
    ) -> MutationResult:
        try:
            target = self.guard.resolve(self.repo_root, path, "read")
        except PathValidationError as exc:
            return MutationResult(ok=False, action="read", path=path, message=str(exc))
        relative = target.relative_to(self.repo_root).as_posix()

        if self._is_redundant_read(relative, recent_history):
            return MutationResult(
                ok=False,
                action="read",
                path=relative,
                message=(
                    f"{relative} was already read and has not changed since; "
                    "its full numbered content is in the recent history."
                ),
            )
        if not target.is_file():
            return MutationResult(
                ok=False, action="read", path=relative, message=f"File not found: {relative}"
            )
        try:
            content = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return _unreadable("read", relative, exc)
        logger.debug("Read %s (%s)", relative, reason or "no reason given")
        return MutationResult(
            ok=True,
            action="read",
            path=relative,
            message=f"Read {relative}",
            content=number_lines(content),
        )

    def _gate(self, action: MutationAction, path: str, phase: str, actor: str) -> str | None:
        if phase == "implementation" or self.is_own_notes(actor, path):
            return None
        return (
            f"Cannot {action} {path} during {phase}: only your own notes file "
            f"({self.notes_path(actor)}) may change outside implementation."
        )

    def edit(
        self,
        path: str,
        edits: Sequence[EditOperation],
        *,
        actor: str,
        phase: str,
        reason: str = "",
    ) -> MutationResult:
        try:
            target = self.guard.resolve(self.repo_root, path, "edit")
        except PathValidationError as exc:
            return MutationResult(ok=False, action="edit", path=path, message=str(exc))
        relative = target.relative_to(self.repo_root).as_posix()

        blocked = self._gate("edit", relative, phase, actor)
        if blocked:
            return MutationResult(ok=False, action="edit", path=relative, message=blocked)
        if not target.is_file():
            return MutationResult(
                ok=False,
                action="edit",
                path=relative,
                message=f"Cannot edit {relative}: file does not exist. Use write to create it.",
            )
        if not edits:
            return MutationResult(
                ok=False, action="edit", path=relative, message="No edits were provided."
            )

        try:
            original = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return _unreadable("edit", relative, exc)
        try:
            updated, fallback_used = apply_edits(original, edits)
        except EditMatchError as exc:
            return MutationResult(ok=False, action="edit", path=relative, message=str(exc))

        result = self._commit(target, relative, updated, action="edit", actor=actor, reason=reason)
        result.fallback_used = fallback_used
        return result

    def write(
        self,
        path: str,
        content: str,
        *,
        actor: str,
        phase: str,
        reason: str = "",
    ) -> MutationResult:
        try:
            target = self.guard.resolve(self.repo_root, path, "write")
        except PathValidationError as exc:
            return MutationResult(ok=False, action="write", path=path, message=str(exc))
        relative = target.relative_to(self.repo_root).as_posix()

        blocked = self._gate("write", relative, phase, actor)
        if blocked:
            return MutationResult(ok=False, action="write", path=relative, message=blocked)
        if target.exists():
            return MutationResult(
                ok=False,
                action="write",
                path=relative,
                message=f"Cannot write {relative}: file already exists. Use edit to change it.",
            )
        return self._commit(target, relative, content, action="write", actor=actor, reason=reason)

    def append_notes(self, actor: str, text: str, *, phase: str) -> MutationResult:
        relative = self.notes_path(actor)
        target = self.repo_root / relative
        if not target.exists():
            return self.write(
                relative, text.rstrip() + "\n", actor=actor, phase=phase, reason="notes"
            )
        try:
            self.guard.resolve(self.repo_root, relative, "edit")
        except PathValidationError as exc:
            return MutationResult(ok=False, action="edit", path=relative, message=str(exc))
        try:
            existing = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return _unreadable("edit", relative, exc)
        separator = "" if existing.endswith("\n") or not existing else "\n"
        updated = f"{existing}{separator}\n{text.rstrip()}\n"
        return self._commit(target, relative, updated, action="edit", actor=actor, reason="notes")

    def apply(
        self,
        request: MutationRequest,
        *,
        actor: str,
        phase: str,
        recent_history: Sequence[HistoryEntry] = (),
    ) -> MutationResult:
        if request.action == "read":
            return self.read(request.path, request.reason, recent_history)
        if request.action == "edit":
            return self.edit(
                request.path, request.edits, actor=actor, phase=phase, reason=request.reason
            )
        return self.write(
            request.path, request.content or "", actor=actor, phase=phase, reason=request.reason
        )

    def _commit(
        self,
        target: Path,
        relative: str,
        content: str,
        *,
        action: MutationAction,
        actor: str,
        reason: str,
    ) -> MutationResult:
        record = CodeChangeRecord(
            path=relative,
            action="create" if action == "write" else "edit",
            actor=actor,
            reason=reason,
        )
        self.records.append(record)

        target.parent.mkdir(parents=True, exist_ok=True)
        staged = target.with_name(f"{target.stem}.staged-{uuid.uuid4().hex[:8]}{target.suffix}")
        try:
            staged.write_text(content, encoding="utf-8")
        except OSError as exc:
            staged.unlink(missing_ok=True)
            record.status = "failed"
            record.completed_at = _utcnow_iso()
            record.diagnostics = str(exc)
            return MutationResult(
                ok=False,
                action=action,
                path=relative,
                message=f"Staging failed: {exc}",
                record=record,
            )

        validation = self.validator.validate(staged) if self.validator else None
        record.completed_at = _utcnow_iso()
        if validation is None or validation.ok:
            os.replace(staged, target)
            record.status = "validated"
            logger.info("%s %s %s", actor, "created" if action == "write" else "edited", relative)
            return MutationResult(
                ok=True,
                action=action,
                path=relative,
                message=f"{'Created' if action == 'write' else 'Updated'} {relative}",
                record=record,
            )

        failed = target.with_name(f"{target.name}.failed.{_failure_stamp()}")
        os.replace(staged, failed)
        record.status = "failed"
        record.diagnostics = validation.diagnostics
        record.failed_artifact = failed.relative_to(self.repo_root).as_posix()
        logger.warning("Validation failed for %s; candidate kept at %s", relative, failed.name)
        return MutationResult(
            ok=False,
            action=action,
            path=relative,
            message=f"Validation failed for {relative}:\n{validation.diagnostics}",
            record=record,
        )
