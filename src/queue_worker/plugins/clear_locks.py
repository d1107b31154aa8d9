"""Release the worker's locks when it shuts down."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from queue_worker.lifecycle import Lifecycle, Plugin

logger = logging.getLogger(__name__)


class ClearLocks(Plugin):
    """Unlock every job still held under the worker's name once ``execute`` ends."""

    def setup(self, lifecycle: Lifecycle) -> None:
        lifecycle.around("execute", _clear_locks_on_exit)


def _clear_locks_on_exit(proceed: Callable[[Any], Any], worker: Any) -> Any:
    try:
        return proceed(worker)
    finally:
        # Must not mask the error that ended the loop (e.g. FatalBackendError).
        try:
            worker.backend.clear_locks(worker.name)
        except Exception:  # noqa: BLE001
            logger.exception("Could not clear locks held by worker %s", worker.name)
