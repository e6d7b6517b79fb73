"""Durable state stores."""

from drydock.state.base import StateStore
from drydock.state.json_store import (
    JsonStateStore,
    advisory_lock,
    atomic_write_json,
    atomic_write_text,
)

__all__ = [
    "JsonStateStore",
    "StateStore",
    "advisory_lock",
    "atomic_write_json",
    "atomic_write_text",
]
