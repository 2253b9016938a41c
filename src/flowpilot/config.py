from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from flowpilot.errors import ConfigError

AgentName = Literal["claude", "codex"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONFIG_FILENAME = "flowpilot.toml"
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 50


@dataclass(slots=True)
class BudgetConfig:
    """Spending ceilings in agent cost units; 0 disables that ceiling."""

    max_per_batch: float = 5.0
    max_total: float = 50.0
    healing_budget: float = 2.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_per_batch": self.max_per_batch,
            "max_total": self.max_total,
            "healing_budget": self.healing_budget,
        }


@dataclass(slots=True)
class RunConfig:
    """Flags captured on a run when it starts; immutable for the run's lifetime."""

    skip_design: bool = False
    skip_analyze: bool = False
    auto_merge: bool = False
    auto_heal_enabled: bool = True
    pause_between_batches: bool = False
    batch_size_fallback: int = 15
    additional_context: str = ""
    budget: BudgetConfig = field(default_factory=BudgetConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RunConfig:
        payload = dict(data or {})
        budget = payload.pop("budget", None) or {}
        try:
            config = cls(budget=BudgetConfig(**budget), **payload)
        except TypeError as exc:
            raise ConfigError(f"Invalid run configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if not MIN_BATCH_SIZE <= int(self.batch_size_fallback) <= MAX_BATCH_SIZE:
            raise ConfigError(
                f"batch_size_fallback must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}, "
                f"got {self.batch_size_fallback}"
            )
        for name in ("max_per_batch", "max_total", "healing_budget"):
            if float(getattr(self.budget, name)) < 0:
                raise ConfigError(f"budget.{name} must not be negative")

    def to_dict(self) -> dict[str, Any]:
        return {
            "skip_design": self.skip_design,
            "skip_analyze": self.skip_analyze,
            "auto_merge": self.auto_merge,
            "auto_heal_enabled": self.auto_heal_enabled,
            "pause_between_batches": self.pause_between_batches,
            "batch_size_fallback": self.batch_size_fallback,
            "additional_context": self.additional_context,
            "budget": self.budget.to_dict(),
        }


@dataclass(slots=True)
class AgentConfig:
    backend: AgentName = "claude"
    binary: str = ""
    extra_args: list[str] = field(default_factory=list)
    timeout_seconds: float = 1800.0
    kill_grace_seconds: float = 5.0


@dataclass(slots=True)
class LoopConfig:
    poll_interval_seconds: float = 3.0
    max_cycles: int = 0
    spawn_grace_seconds: float = 120.0


@dataclass(slots=True)
class ProjectConfig:
    tasks_file: str = "tasks.md"
    skills_dir: str = ".flowpilot/skills"
    state_dir: str = ".flowpilot"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class EngineConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    project: ProjectConfig = field(default_factory=ProjectConfig)
    run: RunConfig = field(default_factory=RunConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> EngineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> EngineConfig:
        try:
            config = cls(
                agent=AgentConfig(**data.get("agent", {})),
                loop=LoopConfig(**data.get("loop", {})),
                project=ProjectConfig(**data.get("project", {})),
                run=RunConfig.from_dict(data.get("run", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        if config.agent.backend not in ("claude", "codex"):
            raise ConfigError(f"Unsupported agent backend: {config.agent.backend}")
        if config.agent.timeout_seconds <= 0:
            raise ConfigError("agent.timeout_seconds must be positive")
        return config

    def to_dict(self) -> dict:
        run = self.run.to_dict()
        budget = run.pop("budget")
        return {
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "extra_args": list(self.agent.extra_args),
                "timeout_seconds": self.agent.timeout_seconds,
                "kill_grace_seconds": self.agent.kill_grace_seconds,
            },
            "loop": {
                "poll_interval_seconds": self.loop.poll_interval_seconds,
                "max_cycles": self.loop.max_cycles,
                "spawn_grace_seconds": self.loop.spawn_grace_seconds,
            },
            "project": {
                "tasks_file": self.project.tasks_file,
                "skills_dir": self.project.skills_dir,
                "state_dir": self.project.state_dir,
            },
            "run": run,
            "run.budget": budget,
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: EngineConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "loop", "project", "run", "run.budget", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> EngineConfig:
    if not path.exists():
        return EngineConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    return EngineConfig.from_dict(data)


def save_config(path: Path, config: EngineConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
