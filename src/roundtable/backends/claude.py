from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from roundtable.backends.base import ActorBackend, BackendExecutionError, BackendProcessError

STDERR_TAIL = 1000

logger = logging.getLogger(__name__)


def _event_text(event: dict[str, Any]) -> str:
    message = event.get("message")
    if isinstance(message, dict):
        event = message
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    delta = event.get("delta")
    return delta if isinstance(delta, str) else ""


@dataclass(slots=True)
class StreamJsonDecoder:
    """Turns ``--output-format stream-json`` lines into assistant text.

    A JSON event split across lines is buffered until it parses. Lines that are
    not JSON at all are passed through as text. The closing ``result`` event
    repeats the whole answer, so it is only used when nothing was streamed.
    """

    pending: str = ""
    result_text: str = ""
    streamed: bool = False

    def feed(self, line: str) -> str:
        line = line.strip()
        if not line:
            return ""
        candidate = self.pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if candidate.count("{") > candidate.count("}"):
                self.pending = candidate
                return ""
            self.pending = ""
            return self._emit(line)
        self.pending = ""
        if not isinstance(event, dict):
            return ""
        if event.get("type") == "result":
            result = event.get("result")
            self.result_text = result if isinstance(result, str) else ""
            return ""
        return self._emit(_event_text(event))

    def finish(self) -> str:
        leftover, self.pending = self.pending, ""
        if leftover:
            return self._emit(leftover)
        if not self.streamed:
            return self.result_text
        return ""

    def _emit(self, text: str) -> str:
        if text:
            self.streamed = True
        return text


class ClaudeCodeBackend(ActorBackend):
    """Runs one actor turn through the ``claude`` CLI in print mode."""

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model or None

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if self.model:
            command.extend(["--model", self.model])
        return command

    async def _spawn(self, command: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}", backend=self.name, retriable=False
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        if context:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2)}"
            )
        process = await self._spawn(self.build_command(system_prompt, user_prompt))
        if process.stdout is None or process.stderr is None:
            raise BackendProcessError(
                "Claude backend did not expose its output pipes.",
                backend=self.name,
                retriable=False,
            )

        # stderr is drained concurrently with stdout.
        stderr_task = asyncio.create_task(process.stderr.read())
        decoder = StreamJsonDecoder()
        try:
            async for raw_line in process.stdout:
                text = decoder.feed(raw_line.decode("utf-8", errors="replace"))
                if text:
                    yield text
            tail = decoder.finish()
            if tail:
                yield tail
            return_code = await process.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()

        if return_code != 0:
            logger.debug("%s exited with %d: %s", self.binary, return_code, stderr_output)
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: "
                f"{stderr_output[-STDERR_TAIL:]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
