"""Machine registry (``<home>/machines.json``).

Managed by ``drydock remote add|remove|list``.  The file holds
``{"machines": [MachineConfig, ...]}`` and is rewritten atomically.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from drydock.core.logging import get_logger
from drydock.core.paths import HomePaths
from drydock.exceptions import ConfigError
from drydock.fleet.config import MachineConfig
from drydock.state.json_store import advisory_lock, atomic_write_json

_logger = get_logger("fleet.machines")


class MachineRegistry:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or HomePaths.resolve().machines_file

    def list(self) -> list[MachineConfig]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            raise ConfigError(f"cannot parse {self.path}: {e}") from e
        try:
            return [MachineConfig.model_validate(m) for m in data.get("machines", [])]
        except (ValidationError, AttributeError) as e:
            raise ConfigError(f"invalid machine registry {self.path}: {e}") from e

    def get(self, name: str) -> MachineConfig | None:
        return next((m for m in self.list() if m.name == name), None)

    def _write(self, machines: list[MachineConfig]) -> None:
        atomic_write_json(
            self.path,
            {"machines": [m.model_dump(mode="json") for m in sorted(machines, key=lambda m: m.name)]},
        )

    def add(self, machine: MachineConfig) -> bool:
        """Add or replace ``machine``; returns True when it replaced an entry."""
        with advisory_lock(self.path):
            machines = self.list()
            replaced = any(m.name == machine.name for m in machines)
            machines = [m for m in machines if m.name != machine.name] + [machine]
            self._write(machines)
        _logger.info("machines.added", name=machine.name, host=machine.host, replaced=replaced)
        return replaced

    def remove(self, name: str) -> bool:
        with advisory_lock(self.path):
            machines = self.list()
            kept = [m for m in machines if m.name != name]
            if len(kept) == len(machines):
                return False
            self._write(kept)
        _logger.info("machines.removed", name=name)
        return True


__all__ = ["MachineRegistry"]
