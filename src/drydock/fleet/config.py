"""Fleet configuration.

``FleetConfig`` is loaded from YAML or JSON (default ``.drydock/fleet.yaml``
in the current directory).  Machines listed in the file are merged by name
with the machine registry (``<home>/machines.json``); a file entry wins
over a registry entry with the same name.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from drydock.core.logging import get_logger
from drydock.core.paths import REPO_DIR_NAME
from drydock.daemon.config import DEFAULT_WATCH_LABEL, MAX_PARALLEL_LIMIT
from drydock.exceptions import ConfigError

_logger = get_logger("fleet.config")

DEFAULT_FLEET_CONFIG = Path(REPO_DIR_NAME) / "fleet.yaml"


class MachineConfig(BaseModel):
    """A host that runs repository daemons and accepts allocations."""

    name: str = Field(min_length=1)
    host: str = Field(min_length=1)
    ssh_user: str | None = Field(default=None)
    remote_path: str = Field(
        default="~",
        description="Repository working copy on the machine",
    )
    max_workers: int = Field(default=4, ge=1, le=MAX_PARALLEL_LIMIT)

    @property
    def ssh_target(self) -> str:
        return f"{self.ssh_user}@{self.host}" if self.ssh_user else self.host


class RepoEntry(BaseModel):
    path: Path
    template: str | None = None
    max_parallel: int | None = Field(default=None, ge=1, le=MAX_PARALLEL_LIMIT)
    watch_label: str | None = None
    model: str | None = None

    @field_validator("path")
    @classmethod
    def _expand(cls, v: Path) -> Path:
        return v.expanduser()

    @property
    def name(self) -> str:
        return self.path.resolve().name


class FleetDefaults(BaseModel):
    watch_label: str = Field(default=DEFAULT_WATCH_LABEL)
    template: str = Field(default="autonomous")
    max_parallel: int = Field(default=2, ge=1, le=MAX_PARALLEL_LIMIT)
    model: str = Field(default="opus")
    poll_interval_seconds: float = Field(default=60.0, ge=1.0)


class WorkerPoolConfig(BaseModel):
    enabled: bool = Field(default=False)
    total_workers: int = Field(default=12, ge=1)
    rebalance_interval_seconds: float = Field(default=120.0, ge=1.0)
    weighting: bool = Field(
        default=False,
        description="Scale demand by complexity, urgency, and priority signals",
    )


class FleetConfig(BaseModel):
    repos: list[RepoEntry] = Field(min_length=1)
    defaults: FleetDefaults = Field(default_factory=FleetDefaults)
    worker_pool: WorkerPoolConfig = Field(default_factory=WorkerPoolConfig)
    machines: list[MachineConfig] = Field(default_factory=list)
    distributed_interval_seconds: float = Field(default=30.0, ge=1.0)

    @model_validator(mode="after")
    def _unique_repo_names(self) -> FleetConfig:
        # Fleet state, session names, and allocations are keyed by basename
        seen: dict[str, Path] = {}
        for entry in self.repos:
            if entry.name in seen:
                raise ValueError(
                    f"repos {seen[entry.name]} and {entry.path} share the name {entry.name!r}"
                )
            seen[entry.name] = entry.path
        return self

    def overrides_for(self, repo: RepoEntry) -> dict[str, Any]:
        """Daemon config layer the orchestrator writes into the repo."""
        d = self.defaults
        return {
            "watch_label": repo.watch_label or d.watch_label,
            "template": repo.template or d.template,
            "model": repo.model or d.model,
            "max_parallel": repo.max_parallel or d.max_parallel,
            "poll_interval_seconds": d.poll_interval_seconds,
        }


def merge_machines(
    configured: list[MachineConfig],
    registered: list[MachineConfig],
) -> list[MachineConfig]:
    merged = {m.name: m for m in registered}
    merged.update({m.name: m for m in configured})
    return sorted(merged.values(), key=lambda m: m.name)


def load_fleet_config(
    path: Path | None = None,
    registry: list[MachineConfig] | None = None,
) -> FleetConfig:
    """Load and validate a fleet config file.

    Raises:
        ConfigError: The file is missing, unparseable, or invalid.
    """
    path = path or DEFAULT_FLEET_CONFIG
    if not path.exists():
        raise ConfigError(f"fleet config not found: {path} (run 'drydock fleet init')")
    try:
        text = path.read_text()
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")

    try:
        config = FleetConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid fleet config {path}: {e}") from e

    if registry:
        config.machines = merge_machines(config.machines, registry)
    _logger.debug(
        "fleet_config.loaded",
        path=str(path),
        repos=len(config.repos),
        machines=len(config.machines),
    )
    return config


__all__ = [
    "DEFAULT_FLEET_CONFIG",
    "FleetConfig",
    "FleetDefaults",
    "MachineConfig",
    "RepoEntry",
    "WorkerPoolConfig",
    "load_fleet_config",
    "merge_machines",
]
