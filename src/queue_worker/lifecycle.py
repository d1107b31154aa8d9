"""Named lifecycle phases wrapped by plugin callbacks.

Every phase is a ``LifecycleCallback`` holding ``before``, ``after`` and
``around`` lists. Running a phase calls the befores in registration order,
then the around chain (first registered is outermost) around the wrapped
block, then the afters. The block's return value is passed back to the
caller untouched, so a phase can wrap work that returns a result.

Around callbacks receive ``proceed`` first, followed by the phase args, and
must call ``proceed(*args)`` to continue the chain::

    def timing(proceed, worker, job):
        started = time.monotonic()
        try:
            return proceed(worker, job)
        finally:
            log(time.monotonic() - started)

    lifecycle.around("perform", timing)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from queue_worker.errors import InvalidCallbackError, LifecycleFrozenError

EVENTS: dict[str, int] = {
    "execute": 1,
    "loop": 1,
    "perform": 2,
    "error": 2,
    "failure": 2,
    "invoke_job": 1,
}

Block = Callable[..., Any]


class LifecycleCallback:
    """Ordered callbacks for a single phase."""

    def __init__(self) -> None:
        self._before: list[Callable[..., Any]] = []
        self._after: list[Callable[..., Any]] = []
        self._around: list[Callable[..., Any]] = []

    def add(self, kind: str, fn: Callable[..., Any]) -> None:
        if kind == "before":
            self._before.append(fn)
        elif kind == "after":
            self._after.append(fn)
        elif kind == "around":
            self._around.append(fn)
        else:
            raise InvalidCallbackError(f"Invalid callback type: {kind!r}")

    def execute(self, *args: Any, block: Block) -> Any:
        for fn in self._before:
            fn(*args)
        result = self._chain(0, block)(*args)
        for fn in self._after:
            fn(*args)
        return result

    def _chain(self, index: int, block: Block) -> Block:
        if index >= len(self._around):
            return block
        fn = self._around[index]
        inner = self._chain(index + 1, block)

        def _wrapped(*args: Any) -> Any:
            return fn(inner, *args)

        return _wrapped


class Lifecycle:
    """Registry of lifecycle phases, frozen once the worker starts."""

    def __init__(self) -> None:
        self._callbacks = {event: LifecycleCallback() for event in EVENTS}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def before(self, event: str, fn: Callable[..., Any]) -> None:
        self._add("before", event, fn)

    def after(self, event: str, fn: Callable[..., Any]) -> None:
        self._add("after", event, fn)

    def around(self, event: str, fn: Callable[..., Any]) -> None:
        self._add("around", event, fn)

    def run_callbacks(self, event: str, *args: Any, block: Block) -> Any:
        """Run ``block(*args)`` wrapped by every callback of ``event``."""

        expected = self._arity(event)
        if len(args) != expected:
            raise InvalidCallbackError(
                f"Callback {event} expects {expected} parameter(s) but got {len(args)}",
            )
        return self._callbacks[event].execute(*args, block=block)

    def _add(self, kind: str, event: str, fn: Callable[..., Any]) -> None:
        self._arity(event)
        if self._frozen:
            raise LifecycleFrozenError(
                f"Cannot register {kind} callback for {event!r} after the worker started.",
            )
        self._callbacks[event].add(kind, fn)

    @staticmethod
    def _arity(event: str) -> int:
        try:
            return EVENTS[event]
        except KeyError as error:
            raise InvalidCallbackError(f"No such lifecycle event: {event!r}") from error


class Plugin:
    """Base class for worker plugins.

    Subclasses override ``setup`` to register callbacks; the worker builds
    one instance per plugin class at construction time.
    """

    def setup(self, lifecycle: Lifecycle) -> None:  # noqa: ARG002
        return None
