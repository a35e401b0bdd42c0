from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ROSTER = [
    "Alex:UX Visionary",
    "Sam:System Architect",
    "Morgan:Implementation Specialist",
    "Jordan:Guardian",
    "Pierre:Entrepreneur",
]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    validator_command: str = "npx tsc --noEmit {path}"
    validator_timeout_seconds: float = 30.0
    validate_extensions: list[str] = field(default_factory=lambda: [".ts", ".js"])


@dataclass(slots=True)
class BackendConfig:
    binary: str = "claude"
    fallback_binary: str = ""
    model: str = ""
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 10.0
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class RosterConfig:
    members: list[str] = field(default_factory=lambda: list(DEFAULT_ROSTER))
    turn_limit: int = 6
    max_self_passes: int = 3

    def parsed_members(self) -> list[tuple[str, str]]:
        parsed: list[tuple[str, str]] = []
        for entry in self.members:
            name, _, role = str(entry).partition(":")
            name = name.strip()
            if not name:
                raise ValueError(f"Roster entry has no name: {entry!r}")
            parsed.append((name, role.strip() or "Contributor"))
        return parsed


@dataclass(slots=True)
class WorkflowConfig:
    workflow_order: list[str] = field(
        default_factory=lambda: ["Morgan", "Sam", "Jordan", "Alex", "Pierre"]
    )
    max_reads_per_turn: int = 5
    max_turns_per_round: int = 30
    max_fix_attempts: int = 2
    unproductive_turn_limit: int = 3
    key_decision_window: int = 10
    classification_window: int = 3
    auto_promote_on_mutation: bool = True
    lottery_seed: int | None = None
    history_tail: int = 50


@dataclass(slots=True)
class GuardrailsConfig:
    allowed_roots: list[str] = field(
        default_factory=lambda: ["src", "notes", "docs", "tests", "data"]
    )
    allowed_extensions: list[str] = field(default_factory=lambda: [".ts", ".md", ".json", ".js"])
    sensitive_files: list[str] = field(default_factory=lambda: ["src/config.ts"])
    blocked_patterns: list[str] = field(
        default_factory=lambda: [".env", ".env.*", "node_modules", ".git"]
    )
    notes_dir: str = "notes"


@dataclass(slots=True)
class StateConfig:
    state_dir: str = ".roundtable/state"


@dataclass(slots=True)
class RoundtableConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    roster: RosterConfig = field(default_factory=RosterConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> RoundtableConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RoundtableConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            roster=RosterConfig(**data.get("roster", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            guardrails=GuardrailsConfig(**data.get("guardrails", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        workflow = {
            "workflow_order": list(self.workflow.workflow_order),
            "max_reads_per_turn": self.workflow.max_reads_per_turn,
            "max_turns_per_round": self.workflow.max_turns_per_round,
            "max_fix_attempts": self.workflow.max_fix_attempts,
            "unproductive_turn_limit": self.workflow.unproductive_turn_limit,
            "key_decision_window": self.workflow.key_decision_window,
            "classification_window": self.workflow.classification_window,
            "auto_promote_on_mutation": self.workflow.auto_promote_on_mutation,
            "history_tail": self.workflow.history_tail,
        }
        # TOML has no null; an unset seed is simply omitted.
        if self.workflow.lottery_seed is not None:
            workflow["lottery_seed"] = self.workflow.lottery_seed
        return {
            "project": {
                "name": self.project.name,
                "validator_command": self.project.validator_command,
                "validator_timeout_seconds": self.project.validator_timeout_seconds,
                "validate_extensions": list(self.project.validate_extensions),
            },
            "backend": {
                "binary": self.backend.binary,
                "fallback_binary": self.backend.fallback_binary,
                "model": self.backend.model,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "backoff_multiplier": self.backend.backoff_multiplier,
                "max_backoff_seconds": self.backend.max_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "roster": {
                "members": list(self.roster.members),
                "turn_limit": self.roster.turn_limit,
                "max_self_passes": self.roster.max_self_passes,
            },
            "workflow": workflow,
            "guardrails": {
                "allowed_roots": list(self.guardrails.allowed_roots),
                "allowed_extensions": list(self.guardrails.allowed_extensions),
                "sensitive_files": list(self.guardrails.sensitive_files),
                "blocked_patterns": list(self.guardrails.blocked_patterns),
                "notes_dir": self.guardrails.notes_dir,
            },
            "state": {
                "state_dir": self.state.state_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RoundtableConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["project", "backend", "roster", "workflow", "guardrails", "state"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def load_config(path: Path) -> RoundtableConfig:
    if not path.exists():
        return RoundtableConfig.default()
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    return RoundtableConfig.from_dict(data)


def save_config(path: Path, config: RoundtableConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
