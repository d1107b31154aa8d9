"""JSON payload codec and the registry of job handlers."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from queue_worker.errors import DeserializationError

HookFn = Callable[[dict[str, Any]], None]
RescheduleFn = Callable[[datetime, int], datetime]

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Handler:
    """Job logic plus optional payload-level hooks."""

    name: str
    perform: HookFn
    hooks: dict[str, HookFn] = field(default_factory=dict)
    reschedule_at: RescheduleFn | None = None
    max_attempts: int | None = None


@dataclass(slots=True, frozen=True)
class Payload:
    """Decoded payload: which handler to call and with what arguments."""

    handler: Handler
    args: dict[str, Any]

    def perform(self) -> None:
        self.handler.perform(self.args)

    def run_hook(self, name: str) -> None:
        hook = self.handler.hooks.get(name)
        if hook is not None:
            hook(self.args)


class HandlerRegistry:
    """Explicit name -> handler table, built at the composition root."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(  # noqa: PLR0913
        self,
        name: str,
        perform: HookFn,
        *,
        on_failure: HookFn | None = None,
        reschedule_at: RescheduleFn | None = None,
        max_attempts: int | None = None,
    ) -> Handler:
        if name in self._handlers:
            raise ValueError(f"Handler already registered: {name!r}")
        hooks = {"failure": on_failure} if on_failure is not None else {}
        handler = Handler(
            name=name,
            perform=perform,
            hooks=hooks,
            reschedule_at=reschedule_at,
            max_attempts=max_attempts,
        )
        self._handlers[name] = handler
        return handler

    def handler(self, name: str, **options: Any) -> Callable[[HookFn], HookFn]:
        """Decorator form of ``register``."""

        def _decorate(fn: HookFn) -> HookFn:
            self.register(name, fn, **options)
            return fn

        return _decorate

    def get(self, name: str) -> Handler | None:
        return self._handlers.get(name)

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))


class PayloadCodec:
    """Encodes ``{"handler": ..., "args": {...}}`` documents."""

    def __init__(self, registry: HandlerRegistry) -> None:
        self.registry = registry

    def encode(self, handler_name: str, args: dict[str, Any] | None = None) -> str:
        if self.registry.get(handler_name) is None:
            raise ValueError(f"Unknown job handler: {handler_name!r}")
        return json.dumps({"handler": handler_name, "args": args or {}}, sort_keys=True)

    def decode(self, raw: str) -> Payload:
        try:
            document = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as error:
            raise DeserializationError(f"Job payload is not valid JSON: {error}") from error
        if not isinstance(document, dict):
            raise DeserializationError("Job payload must be a JSON object.")
        handler_name = document.get("handler")
        args = document.get("args", {})
        if not isinstance(handler_name, str) or not handler_name:
            raise DeserializationError("Job payload is missing 'handler'.")
        if not isinstance(args, dict):
            raise DeserializationError("Job payload 'args' must be a JSON object.")
        handler = self.registry.get(handler_name)
        if handler is None:
            raise DeserializationError(f"Job payload references unknown handler: {handler_name!r}")
        return Payload(handler=handler, args=args)


class ShellCommandError(RuntimeError):
    """Shell job exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str) -> None:
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"Command exited with code {exit_code}{detail}")
        self.command = command
        self.exit_code = exit_code


def run_shell_command(args: dict[str, Any]) -> None:
    """Built-in ``shell`` handler: run ``args["command"]`` without a shell."""

    command = args.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ValueError("Shell job requires a non-empty 'command' argument.")
    result = subprocess.run(  # noqa: S603
        shlex.split(command),
        capture_output=True,
        text=True,
        check=False,
        cwd=args.get("cwd"),
    )
    if result.stdout:
        logger.info("%s", result.stdout.strip())
    if result.returncode != 0:
        raise ShellCommandError(command, result.returncode, result.stderr or "")


def default_registry() -> HandlerRegistry:
    """Registry with the built-in handlers."""

    registry = HandlerRegistry()
    registry.register("shell", run_shell_command)
    return registry
