"""Repository interfaces for runtime persistence abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from ..domain.models import Run


class RunRepository(ABC):
    """Persistence contract for feature run records."""
    @abstractmethod
    def list(self) -> List[Run]:
        """List every persisted run record.

        Returns:
            List[Run]: All run records currently stored.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, run_id: str) -> Optional[Run]:
        """Fetch a run by id, or ``None`` when no record exists.

        Args:
            run_id (str): Identifier for the target run.

        Returns:
            Optional[Run]: Requested value when available; otherwise `None`.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert(self, run: Run) -> Run:
        """Create or update a run record.

        Args:
            run (Run): Run model to persist.

        Returns:
            Run: Persisted run record after the write operation.
        """
        raise NotImplementedError

    @abstractmethod
    def request_cancel(self, run_id: str) -> Optional[Run]:
        """Persist a cancel request for a run, even one owned by another process.

        Args:
            run_id (str): Identifier for the target run.

        Returns:
            Optional[Run]: The updated record, or `None` when no record exists.
        """
        raise NotImplementedError


class EventRepository(ABC):
    """Persistence contract for the lifecycle event log."""
    @abstractmethod
    def append(self, record: dict[str, Any]) -> dict[str, Any]:
        """Append one event envelope and return it unchanged.

        Args:
            record (dict[str, Any]): JSON-serializable envelope built by the bus.

        Returns:
            dict[str, Any]: The persisted envelope.
        """
        raise NotImplementedError

    @abstractmethod
    def list_for_run(self, run_id: str) -> List[dict[str, Any]]:
        """List every stored event for one run in emission order.

        Args:
            run_id (str): Identifier for the run whose log is requested.

        Returns:
            List[dict[str, Any]]: Event envelopes ordered by their per-run sequence.
        """
        raise NotImplementedError
