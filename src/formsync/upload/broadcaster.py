"""Fan-out of upload progress events to any number of observers.

Backed by a hot reactivex ``Subject``: no buffering and no replay, so a late
subscriber only sees events published after it subscribed.
"""

from __future__ import annotations

import logging
from typing import Callable

from reactivex.subject import Subject

from formsync.models import UploadProgress

logger = logging.getLogger(__name__)

StatusCallback = Callable[[UploadProgress], None]


class StatusBroadcaster:
    """Observer registration surface for :class:`UploadProgress` events.

    Usage::

        broadcaster = StatusBroadcaster()
        unsubscribe = broadcaster.subscribe(lambda p: print(p.percent))
        ...
        unsubscribe()
    """

    def __init__(self) -> None:
        self._subject: Subject[UploadProgress] = Subject()
        self._subscriber_count = 0
        self._closed = False

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register *callback* for future events.

        A callback that raises is logged and skipped; it never interrupts the
        publisher or other subscribers.

        Returns:
            A zero-argument function that removes the subscription.
        """

        def _guarded(progress: UploadProgress) -> None:
            try:
                callback(progress)
            except Exception:
                logger.exception(
                    "Status subscriber %r failed on %s event for %s",
                    callback,
                    progress.stage.value,
                    progress.record_id,
                )

        disposable = self._subject.subscribe(on_next=_guarded)
        self._subscriber_count += 1
        disposed = False

        def unsubscribe() -> None:
            nonlocal disposed
            if disposed:
                return
            disposed = True
            disposable.dispose()
            self._subscriber_count -= 1

        return unsubscribe

    def publish(self, progress: UploadProgress) -> None:
        """Deliver *progress* to every current subscriber."""
        if self._closed:
            return
        logger.debug(
            "%s: %s %.0f%% (%s)",
            progress.record_id,
            progress.stage.value,
            progress.percent,
            progress.current_step,
        )
        self._subject.on_next(progress)

    @property
    def subscriber_count(self) -> int:
        return self._subscriber_count

    def close(self) -> None:
        """Complete the stream; later publishes are dropped."""
        if not self._closed:
            self._closed = True
            self._subject.on_completed()
            self._subject.dispose()
