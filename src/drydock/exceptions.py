"""Exception hierarchy for drydock.

Everything inherits from DrydockError so callers can catch broadly or
narrowly.  The hierarchy is kept flat on purpose; the category of a failure
is carried by which subclass is raised, not by nesting.
"""

from __future__ import annotations


class DrydockError(Exception):
    """Base exception for all drydock errors."""


class ConfigError(DrydockError):
    """A configuration file is missing, unparseable, or fails validation."""


class DaemonAlreadyRunningError(DrydockError):
    """A daemon for this repository already holds the PID file."""


class DaemonNotRunningError(DrydockError):
    """No live daemon was found for this repository."""


class StateCorruptionError(DrydockError):
    """A state file cannot be parsed and could not be recovered.

    Scheduler-fatal: the daemon exits and relies on an outside supervisor.
    """


class InvalidTransitionError(DrydockError):
    """A job was asked to move backward or skip a lifecycle state."""


class WatchdogExhaustedError(DrydockError):
    """The watchdog used up its restart budget.  Scheduler-fatal."""


class SpawnError(DrydockError):
    """A job's workspace or agent process could not be started."""


class TrackerError(DrydockError):
    """An issue-tracker call failed after its retries."""


class RemoteError(DrydockError):
    """A remote-channel call failed or timed out.

    Always handled per machine; never aborts a cycle for other machines.
    """

    def __init__(self, machine: str, message: str) -> None:
        self.machine = machine
        super().__init__(f"{machine}: {message}")


__all__ = [
    "ConfigError",
    "DaemonAlreadyRunningError",
    "DaemonNotRunningError",
    "DrydockError",
    "InvalidTransitionError",
    "RemoteError",
    "SpawnError",
    "StateCorruptionError",
    "TrackerError",
    "WatchdogExhaustedError",
]
