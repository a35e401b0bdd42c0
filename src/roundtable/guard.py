from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Literal

from roundtable.config import GuardrailsConfig

AccessMode = Literal["read", "edit", "write"]


class PathValidationError(RuntimeError):
    """Raised when a requested path falls outside the repository allowlist."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


@dataclass(slots=True)
class PathGuard:
    """Pure allowlist check for every file path an actor asks to touch."""

    allowed_roots: list[str] = field(default_factory=list)
    allowed_extensions: list[str] = field(default_factory=list)
    sensitive_files: list[str] = field(default_factory=list)
    blocked_patterns: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: GuardrailsConfig) -> PathGuard:
        return cls(
            allowed_roots=list(config.allowed_roots),
            allowed_extensions=list(config.allowed_extensions),
            sensitive_files=list(config.sensitive_files),
            blocked_patterns=list(config.blocked_patterns),
        )

    @staticmethod
    def normalize(path: str) -> str:
        return str(path).strip().replace("\\", "/")

    def _matches_blocked_pattern(self, normalized: str) -> str | None:
        parts = PurePosixPath(normalized).parts
        for pattern in self.blocked_patterns:
            if fnmatch.fnmatch(normalized, pattern):
                return pattern
            if any(fnmatch.fnmatch(part, pattern) for part in parts):
                return pattern
        return None

    def validate(self, path: str, mode: AccessMode = "read") -> str:
        """Return the normalized repository-relative path or raise PathValidationError."""
        normalized = self.normalize(path)
        if not normalized:
            raise PathValidationError("File path cannot be empty.", path=path)

        pure = PurePosixPath(normalized)
        if pure.is_absolute() or (len(normalized) > 1 and normalized[1] == ":"):
            raise PathValidationError(
                f"Absolute paths are not allowed: '{path}'.", path=path
            )
        if ".." in pure.parts:
            raise PathValidationError(
                f"Path traversal attempt detected in '{path}'.", path=path
            )

        parts = [part for part in pure.parts if part not in {"", "."}]
        if not parts:
            raise PathValidationError("File path cannot be empty.", path=path)
        normalized = "/".join(parts)

        blocked = self._matches_blocked_pattern(normalized)
        if blocked:
            raise PathValidationError(
                f"Access to '{path}' is disallowed (matched blocked pattern '{blocked}').",
                path=path,
            )

        root = parts[0]
        if len(parts) < 2 or root not in self.allowed_roots:
            raise PathValidationError(
                f"Path '{path}' is not within an allowed root directory. "
                f"Allowed: {', '.join(self.allowed_roots)}.",
                path=path,
            )

        suffix = PurePosixPath(parts[-1]).suffix
        if suffix not in self.allowed_extensions:
            raise PathValidationError(
                f"File extension '{suffix or '(none)'}' for '{path}' is not allowed. "
                f"Allowed: {', '.join(self.allowed_extensions)}.",
                path=path,
            )

        if mode != "read" and normalized in self.sensitive_files:
            raise PathValidationError(
                f"Modifying sensitive file '{path}' is disallowed.", path=path
            )
        return normalized

    def resolve(self, repo_root: Path, path: str, mode: AccessMode = "read") -> Path:
        relative = self.validate(path, mode)
        root = repo_root.resolve()
        target = (root / relative).resolve()
        # Symlinks may still point outside the repository.
        if not target.is_relative_to(root):
            raise PathValidationError(
                f"Path '{path}' resolves outside the repository root.", path=path
            )
        return target

    def is_allowed(self, path: str, mode: AccessMode = "read") -> bool:
        try:
            self.validate(path, mode)
        except PathValidationError:
            return False
        return True
