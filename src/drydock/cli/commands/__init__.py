"""drydock CLI command groups, one module per ``typer`` sub-app."""

from .daemon import daemon_app
from .fleet import fleet_app
from .heartbeat import heartbeat_app
from .remote import remote_app

__all__ = ["daemon_app", "fleet_app", "heartbeat_app", "remote_app"]
