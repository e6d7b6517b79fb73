"""Configuration for the per-repository daemon.

``SchedulerConfig`` is resolved from several layers, lowest precedence first:

1. model defaults
2. ``<repo>/.drydock/fleet-overrides.yaml``: per-repo settings from the fleet orchestrator
3. ``<repo>/.drydock/daemon.yaml`` (or an explicit ``--config`` file)
4. ``<repo>/.drydock/fleet-limit.json``: ``max_parallel`` from the rebalancer
5. ``DRYDOCK_*`` environment variables

Layers are deep-merged into one dict and validated once.  Hot reload calls
:func:`resolve_scheduler_config` again rather than patching fields on a live
config object.
"""

from __future__ import annotations

import json
import os
import string
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from drydock.core.logging import get_logger
from drydock.core.paths import RepoPaths
from drydock.exceptions import ConfigError

_logger = get_logger("daemon.config")

DEFAULT_WATCH_LABEL = "ready-to-build"

# Upper bound on concurrent jobs per repository, shared with fleet budgets
MAX_PARALLEL_LIMIT = 64

# Placeholders accepted inside ``agent_command`` entries
AGENT_PLACEHOLDERS = frozenset({"ref", "template", "model", "workspace", "branch"})


class PriorityLaneConfig(BaseModel):
    """Bypass lane that lets a few urgent issues past a full normal limit."""

    enabled: bool = Field(default=False)
    labels: list[str] = Field(
        default_factory=lambda: ["hotfix", "incident", "p0", "urgent"],
        description="Issues carrying any of these labels may use the lane",
    )
    max_extra_slots: int = Field(
        default=1,
        ge=0,
        description="Jobs allowed in the lane at once, on top of max_parallel",
    )


class OnSuccessConfig(BaseModel):
    """Tracker actions after a job completes."""

    remove_label: str | None = Field(
        default=None,
        description="Label removed on success; None means the watch label",
    )
    add_label: str | None = Field(default="pipeline/complete")
    close_issue: bool = Field(default=False)


class OnFailureConfig(BaseModel):
    """Tracker actions after a job fails permanently."""

    add_label: str | None = Field(default="pipeline/failed")
    comment_lines: int = Field(
        default=50,
        ge=0,
        description="Trailing log lines posted as an issue comment (0 disables)",
    )


class HealthTimeouts(BaseModel):
    """Liveness thresholds for running jobs."""

    heartbeat_timeout_s: int = Field(
        default=120,
        ge=10,
        description="A job heartbeat older than this is reported as late",
    )
    stale_timeout_s: int = Field(
        default=1800,
        ge=60,
        description="A live job whose heartbeat is older than this is killed as stuck",
    )

    @model_validator(mode="after")
    def _stale_after_heartbeat(self) -> HealthTimeouts:
        if self.stale_timeout_s < self.heartbeat_timeout_s:
            raise ValueError("stale_timeout_s must be >= heartbeat_timeout_s")
        return self


class EscalationConfig(BaseModel):
    """How retries escalate when ``retry_escalation`` is on."""

    model: str = Field(default="opus", description="Model used from the first retry on")
    template: str = Field(default="full", description="Template used from the second retry on")


class WatchdogConfig(BaseModel):
    """Restart budget for the daemon's run loop."""

    max_restarts: int = Field(default=3, ge=0)
    initial_delay_seconds: float = Field(default=5.0, gt=0)
    max_delay_seconds: float = Field(default=300.0, gt=0)


class SchedulerConfig(BaseModel):
    """Fully resolved daemon settings for one repository."""

    watch_label: str = Field(default=DEFAULT_WATCH_LABEL, min_length=1)
    poll_interval_seconds: float = Field(default=60.0, ge=1.0)
    max_parallel: int = Field(default=2, ge=1, le=MAX_PARALLEL_LIMIT)
    template: str = Field(default="autonomous")
    model: str = Field(default="opus")
    base_branch: str = Field(default="main")
    priority_lane: PriorityLaneConfig = Field(default_factory=PriorityLaneConfig)
    on_success: OnSuccessConfig = Field(default_factory=OnSuccessConfig)
    on_failure: OnFailureConfig = Field(default_factory=OnFailureConfig)
    health: HealthTimeouts = Field(default_factory=HealthTimeouts)
    max_retries: int = Field(
        default=2,
        ge=0,
        description="Retry ceiling for failures that match no known class",
    )
    retry_escalation: bool = Field(default=True)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    agent_command: list[str] = Field(
        default_factory=lambda: [
            "drydock-agent",
            "--issue", "{ref}",
            "--template", "{template}",
            "--model", "{model}",
        ],
        min_length=1,
        description="Command spawned inside the job worktree",
    )
    shutdown_grace_seconds: float = Field(default=5.0, ge=0.0)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    state_lock_timeout_seconds: float = Field(default=5.0, gt=0)
    log_level: Literal["debug", "info", "warning", "error"] = Field(default="info")
    log_file: Path | None = Field(default=None)

    @field_validator("agent_command")
    @classmethod
    def _known_placeholders(cls, v: list[str]) -> list[str]:
        """Reject typos like ``{issue}`` early instead of at spawn time."""
        formatter = string.Formatter()
        for part in v:
            for _, name, _, _ in formatter.parse(part):
                if name is not None and name not in AGENT_PLACEHOLDERS:
                    raise ValueError(
                        f"unknown placeholder {{{name}}} in agent_command; "
                        f"allowed: {sorted(AGENT_PLACEHOLDERS)}"
                    )
        return v


# ─── Layered resolution ───────────────────────────────────────────────

_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "DRYDOCK_MAX_PARALLEL": ("max_parallel",),
    "DRYDOCK_POLL_INTERVAL": ("poll_interval_seconds",),
    "DRYDOCK_WATCH_LABEL": ("watch_label",),
    "DRYDOCK_TEMPLATE": ("template",),
    "DRYDOCK_BASE_BRANCH": ("base_branch",),
}


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested dicts merge recursively."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_yaml_layer(path: Path) -> dict[str, Any]:
    """Read one YAML (or JSON) layer; a missing file is an empty layer."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def _limit_layer(path: Path) -> dict[str, Any]:
    """The rebalancer's allocation file contributes ``max_parallel`` only."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        _logger.warning("config.limit_file_unreadable", path=str(path), error=str(e))
        return {}
    value = data.get("max_parallel") if isinstance(data, dict) else None
    if isinstance(value, int) and value >= 1:
        return {"max_parallel": min(value, MAX_PARALLEL_LIMIT)}
    return {}


def _env_layer(env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for var, path in _ENV_OVERRIDES.items():
        if var in env and env[var] != "":
            node = layer
            for key in path[:-1]:
                node = node.setdefault(key, {})
            node[path[-1]] = env[var]
    return layer


def resolve_scheduler_config(
    repo: Path,
    config_file: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SchedulerConfig:
    """Resolve the daemon config for ``repo`` from all layers.

    Raises:
        ConfigError: A layer is unparseable or the merged result is invalid.
    """
    paths = RepoPaths(repo)
    layers = [
        load_yaml_layer(paths.fleet_overrides_file),
        load_yaml_layer(config_file or paths.config_file),
        _limit_layer(paths.fleet_limit_file),
        _env_layer(os.environ if env is None else env),
    ]
    merged: dict[str, Any] = {}
    for layer in layers:
        merged = deep_merge(merged, layer)
    try:
        return SchedulerConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"invalid daemon config for {repo}: {e}") from e


__all__ = [
    "EscalationConfig",
    "HealthTimeouts",
    "MAX_PARALLEL_LIMIT",
    "OnFailureConfig",
    "OnSuccessConfig",
    "PriorityLaneConfig",
    "SchedulerConfig",
    "WatchdogConfig",
    "deep_merge",
    "load_yaml_layer",
    "resolve_scheduler_config",
]
