"""
Execution host: owns the run state machine and the context lifecycle.

The host starts one isolated context per run, subscribes it on a run-scoped
message channel and folds the context's messages into the current ``Run``.
Callers read results through immutable ``RunSnapshot`` objects.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ..core.config import SandboxConfig
from ..core.exceptions import ContextStartError, UserCodeError
from ..core.logging import get_logger
from ..sandbox.channel import MessageChannel, Subscription
from ..sandbox.context import IsolatedContext
from ..sandbox.messages import Message, MessageKind

logger = get_logger(__name__)

ContextFactory = Callable[..., Any]
Listener = Callable[["RunSnapshot"], None]


class RunStatus(Enum):
    """Lifecycle states of a run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


@dataclass(slots=True)
class Run:
    """One execution attempt. Only the host mutates it."""

    run_id: str
    source_code: str
    status: RunStatus = RunStatus.IDLE
    output_lines: list[str] = field(default_factory=list)
    error_message: str | None = None
    error_detail: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass(frozen=True)
class RunSnapshot:
    """Immutable read model of the host's current run."""

    run_id: str | None = None
    status: RunStatus = RunStatus.IDLE
    output_lines: tuple[str, ...] = ()
    error_message: str | None = None
    error_detail: str | None = None

    @classmethod
    def of(cls, run: Run | None) -> "RunSnapshot":
        if run is None:
            return cls()
        return cls(
            run_id=run.run_id,
            status=run.status,
            output_lines=tuple(run.output_lines),
            error_message=run.error_message,
            error_detail=run.error_detail,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def raise_for_error(self) -> None:
        """Raise UserCodeError if this snapshot is of a failed run."""
        if self.status is RunStatus.FAILED:
            raise UserCodeError(
                self.error_message or "",
                run_id=self.run_id,
                detail=self.error_detail,
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result = {
            "run_id": self.run_id,
            "status": self.status.value,
            "output_lines": list(self.output_lines),
            "error_message": self.error_message,
        }
        if self.error_detail:
            result["error_detail"] = self.error_detail
        return result


class ExecutionHost:
    """
    Drives runs of user code in isolated contexts.

    At most one context is alive and subscribed at a time. Starting a run or
    resetting closes the previous context and unsubscribes its run id, and
    ``on_message`` additionally ignores any message not tagged with the
    current run id.
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        *,
        context_factory: ContextFactory | None = None,
        channel: MessageChannel | None = None,
    ):
        """
        Initialize the execution host.

        Args:
            config: Sandbox configuration used for every context
            context_factory: Callable building a context from
                ``(run_id, source_code, deliver, config)``; defaults to
                ``IsolatedContext``
            channel: Message channel to route deliveries through
        """
        self.config = config or SandboxConfig()
        self._context_factory = context_factory or IsolatedContext
        self._channel = channel or MessageChannel()
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._run: Run | None = None
        self._context: Any = None
        self._subscription: Subscription | None = None
        self._listeners: list[Listener] = []

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start_run(self, source_code: str) -> str:
        """
        Start executing ``source_code`` in a brand-new isolated context.

        Any previous run is superseded: its context is closed and its later
        messages are discarded. Failure to start the context marks the new
        run as failed instead of raising.

        Returns:
            The id of the new run.
        """
        with self._lock:
            self._discard_context()

            run = Run(run_id=uuid.uuid4().hex, source_code=source_code)
            run.status = RunStatus.RUNNING
            run.started_at = time.monotonic()
            self._run = run
            self._subscription = self._channel.subscribe(run.run_id, self.on_message)

            try:
                context = self._context_factory(
                    run.run_id, source_code, self._channel.publish, self.config
                )
                self._context = context
                context.start()
            except ContextStartError as e:
                logger.error("Run %s could not start: %s", run.run_id, e.reason)
                self._fail(run, str(e), None)
            except Exception as e:
                logger.exception("Run %s could not start", run.run_id)
                self._fail(run, f"Failed to start execution context: {e}", None)
            else:
                logger.debug("Started run %s (%d chars)", run.run_id, len(source_code))

            self._changed.notify_all()
            snapshot = RunSnapshot.of(run)

        self._notify_listeners(snapshot)
        return run.run_id

    def reset_run(self) -> None:
        """Drop the current run and its context. Safe to call in any state."""
        with self._lock:
            had_run = self._run is not None
            self._discard_context()
            self._run = None
            self._changed.notify_all()

        if had_run:
            logger.debug("Run state reset")
            self._notify_listeners(RunSnapshot())

    def close(self) -> None:
        """Release the active context."""
        self.reset_run()

    def __enter__(self) -> "ExecutionHost":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ── Messages ──────────────────────────────────────────────────────

    def on_message(self, message: Message) -> None:
        """
        Apply one context message to the current run.

        Messages from superseded or reset runs are discarded. Log lines are
        appended even after the run finished, since background threads of the
        same run may still be printing; error and done only act while the run
        is still running, so the first terminal message wins.
        """
        with self._lock:
            run = self._run
            if run is None or message.run_id != run.run_id:
                logger.debug(
                    "Discarding stale %s message from run %s", message.kind.value, message.run_id
                )
                return

            if message.kind is MessageKind.LOG:
                run.output_lines.append(message.text)
            elif run.status is not RunStatus.RUNNING:
                logger.debug(
                    "Ignoring %s for run %s already %s",
                    message.kind.value,
                    run.run_id,
                    run.status.value,
                )
                return
            elif message.kind is MessageKind.ERROR:
                self._fail(run, message.text, message.detail)
            else:
                run.status = RunStatus.COMPLETED
                run.finished_at = time.monotonic()
                logger.debug("Run %s completed in %.3fs", run.run_id, run.duration_seconds)

            self._changed.notify_all()
            snapshot = RunSnapshot.of(run)

        self._notify_listeners(snapshot)

    # ── Read model ────────────────────────────────────────────────────

    def snapshot(self) -> RunSnapshot:
        with self._lock:
            return RunSnapshot.of(self._run)

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return RunStatus.IDLE if self._run is None else self._run.status

    @property
    def output_lines(self) -> list[str]:
        with self._lock:
            return [] if self._run is None else list(self._run.output_lines)

    @property
    def error_message(self) -> str | None:
        with self._lock:
            return None if self._run is None else self._run.error_message

    @property
    def current_run_id(self) -> str | None:
        with self._lock:
            return None if self._run is None else self._run.run_id

    def wait(self, timeout: float | None = None) -> RunSnapshot:
        """
        Block until the current run finishes, is replaced or reset, or the
        timeout elapses, then return the latest snapshot.
        """
        with self._changed:
            run = self._run
            if run is not None:
                self._changed.wait_for(
                    lambda: self._run is not run or run.status.is_terminal, timeout
                )
            return RunSnapshot.of(self._run)

    # ── Listeners ─────────────────────────────────────────────────────

    def add_listener(self, callback: Listener) -> None:
        """Call ``callback(snapshot)`` after every state change."""
        with self._lock:
            if callback not in self._listeners:
                self._listeners.append(callback)

    def remove_listener(self, callback: Listener) -> None:
        with self._lock:
            self._listeners = [item for item in self._listeners if item != callback]

    # ── Internal helpers ──────────────────────────────────────────────

    def _fail(self, run: Run, text: str, detail: str | None) -> None:
        run.error_message = text
        run.error_detail = detail
        run.status = RunStatus.FAILED
        run.finished_at = time.monotonic()
        logger.debug("Run %s failed: %s", run.run_id, text)

    def _discard_context(self) -> None:
        # Caller holds self._lock.
        self._channel.unsubscribe(self._subscription)
        self._subscription = None
        context = self._context
        self._context = None
        if context is not None:
            context.close()

    def _notify_listeners(self, snapshot: RunSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)

        # Dispatch outside lock
        for callback in listeners:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Run listener %r failed", callback)
