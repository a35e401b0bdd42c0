from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ValidationResult:
    ok: bool
    diagnostics: str = ""
    command: str = ""
    exit_code: int | None = None
    skipped: bool = False


@dataclass(slots=True)
class CommandValidator:
    """Runs an external check (compiler, type checker) against a staged file.

    ``{path}`` in the command is replaced with the staged file path. Files whose
    suffix is not in ``extensions`` are accepted without running anything.
    """

    command: str
    repo_root: Path
    timeout_seconds: float = 30.0
    extensions: list[str] = field(default_factory=list)

    def applies_to(self, path: Path) -> bool:
        if not self.command.strip():
            return False
        if not self.extensions:
            return True
        return path.suffix in self.extensions

    def _render(self, path: Path) -> str:
        if "{path}" not in self.command:
            return self.command.strip()
        return self.command.replace("{path}", shlex.quote(str(path))).strip()

    def validate(self, staged_path: Path) -> ValidationResult:
        if not self.applies_to(staged_path):
            return ValidationResult(ok=True, skipped=True)

        command_text = self._render(staged_path)
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        logger.debug("Validating %s with: %s", staged_path, command_text)
        try:
            proc = subprocess.run(
                command_payload,
                cwd=self.repo_root,
                shell=used_shell,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return ValidationResult(
                ok=False,
                diagnostics=f"Validator timed out after {self.timeout_seconds:.0f}s.",
                command=command_text,
            )
        except FileNotFoundError as exc:
            return ValidationResult(
                ok=False,
                diagnostics=f"Validator command not found: {exc.filename or command_text}",
                command=command_text,
            )

        if proc.returncode == 0:
            return ValidationResult(ok=True, command=command_text, exit_code=0)
        output = "\n".join(part for part in (proc.stdout.strip(), proc.stderr.strip()) if part)
        return ValidationResult(
            ok=False,
            diagnostics=output[-2000:] or f"Validator exited with code {proc.returncode}.",
            command=command_text,
            exit_code=proc.returncode,
        )
