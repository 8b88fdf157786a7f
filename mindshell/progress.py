"""Progress events for one model download, owned by the caller that starts it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

STAGES = ("initializing", "downloading", "verifying", "writing", "complete")


@dataclass(frozen=True)
class DownloadProgressEvent:
    model: str
    progress: str
    is_complete: bool
    stage: str = "initializing"
    percentage: float = 0
    error: Optional[str] = None


ProgressListener = Callable[[DownloadProgressEvent], None]


class DownloadProgress:
    """Publisher scoped to a single download.

    Pass an instance into the operation that downloads; listeners registered
    with ``subscribe`` receive every event in order.
    """

    def __init__(self, model: str = "") -> None:
        self._listeners: List[ProgressListener] = []
        self._state = DownloadProgressEvent(model=model, progress="", is_complete=False)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def current(self) -> DownloadProgressEvent:
        return self._state

    def _publish(self, event: DownloadProgressEvent) -> None:
        self._state = event
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Download progress listener failed: %s", exc)

    def start(self, model: Optional[str] = None) -> None:
        self._publish(
            DownloadProgressEvent(
                model=model or self._state.model,
                progress="Initializing download...",
                is_complete=False,
                stage="initializing",
                percentage=0,
            )
        )

    def update(self, progress: str, stage: Optional[str] = None, percentage: Optional[float] = None) -> None:
        self._publish(
            replace(
                self._state,
                progress=progress,
                is_complete=False,
                stage=stage or self._state.stage,
                percentage=self._state.percentage if percentage is None else percentage,
            )
        )

    def complete(self) -> None:
        self._publish(
            replace(self._state, progress="Download completed!", is_complete=True, stage="complete", percentage=100)
        )

    def fail(self, error: str) -> None:
        self._publish(replace(self._state, progress=f"Download failed: {error}", is_complete=True, error=error))
