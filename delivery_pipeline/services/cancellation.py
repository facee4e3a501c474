"""Cooperative cancellation of pipeline runs."""

import threading
from typing import Optional

from delivery_pipeline.exceptions import RunCancelled


class CancellationToken:
    """
    Cancellation flag shared between a run's controller and its stages.

    Stages poll ``raise_if_cancelled`` before each step they can still
    abandon. Once a stage has produced an irreversible effect it stops
    polling; the deploy stage turns a late cancellation into a rollback.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled by request") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self, stage: str = None) -> None:
        if self._event.is_set():
            raise RunCancelled(self._reason or "Run cancelled", stage=stage)
