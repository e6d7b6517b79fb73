"""Abstract base for state stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Generic, TypeVar

from pydantic import BaseModel

M = TypeVar("M", bound=BaseModel)


class StateStore(ABC, Generic[M]):
    """Load / compute / atomic-save access to one state document.

    Writers never patch the file in place: they load the whole document,
    compute the new value, and replace the file atomically.
    """

    @abstractmethod
    def load(self) -> M:
        """Load the document, or a fresh default if none exists yet.

        Raises:
            StateCorruptionError: The stored document cannot be parsed.
        """
        ...

    @abstractmethod
    def save(self, state: M) -> None:
        """Persist ``state`` so readers see either the old or the new document."""
        ...

    @abstractmethod
    def update(self, mutate: Callable[[M], None]) -> M:
        """Load, apply ``mutate``, and save under the store's lock."""
        ...

    @abstractmethod
    def check(self) -> bool:
        """Whether the stored document is structurally intact."""
        ...

    @abstractmethod
    def recover(self) -> M:
        """Salvage what can be kept from a corrupt document and save it.

        Raises:
            StateCorruptionError: Recovery itself failed.
        """
        ...
