"""
Isolated execution context: one disposable guest process per run.

The guest is started with the configured multiprocessing start method
(``spawn`` by default, so no host memory is inherited) and talks back over a
private queue. A daemon pump thread on the host side turns queue payloads
into ``Message`` objects and hands them to the delivery callback.
"""

from __future__ import annotations

import multiprocessing
import threading
from queue import Empty
from typing import Any, Callable

from ..core.config import SandboxConfig
from ..core.exceptions import ContextStartError, MessageFormatError, SandboxError
from ..core.logging import get_logger
from .guest import GuestOptions, guest_main
from .messages import Message

logger = get_logger(__name__)

Deliver = Callable[[Message], Any]


class IsolatedContext:
    """
    Guest process running one piece of user code.

    ``close()`` stops delivery immediately. With ``terminate_on_cancel`` the
    process is also terminated; otherwise it is left to finish on its own and
    whatever it still sends is drained and dropped.
    """

    def __init__(
        self,
        run_id: str,
        source_code: str,
        deliver: Deliver,
        config: SandboxConfig | None = None,
    ):
        self.run_id = run_id
        self.source_code = source_code
        self._deliver = deliver
        self._config = config or SandboxConfig()
        self._mp: Any = None
        self._queue: Any = None
        self._process: Any = None
        self._pump_thread: threading.Thread | None = None
        self._closed = threading.Event()
        self._terminal_seen = False

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self) -> None:
        """
        Spawn the guest process and start pumping its messages.

        Raises:
            ContextStartError: when the guest process cannot be created.
        """
        if self._process is not None:
            raise SandboxError(f"Context for run {self.run_id} was already started")

        options = GuestOptions(
            echo_output=self._config.echo_output,
            filename=self._config.filename,
            env_allowlist=list(self._config.env_allowlist),
        )
        try:
            if self._mp is None:
                self._mp = multiprocessing.get_context(self._config.start_method)
            self._queue = self._mp.Queue()
            self._process = self._mp.Process(
                target=guest_main,
                args=(self.run_id, self.source_code, self._queue, options),
                name=f"pyplayground-run-{self.run_id[:8]}",
                daemon=True,
            )
            self._process.start()
        except Exception as e:
            self._process = None
            raise ContextStartError(self.run_id, str(e)) from e

        logger.debug("Started context for run %s (pid %s)", self.run_id, self._process.pid)
        self._pump_thread = threading.Thread(
            target=self._pump,
            name=f"pyplayground-pump-{self.run_id[:8]}",
            daemon=True,
        )
        self._pump_thread.start()

    def close(self) -> None:
        """
        Stop delivering messages and cancel the guest.

        Never blocks on the pump thread, so it is safe to call while holding
        a lock the delivery callback needs.
        """
        if self._closed.is_set():
            return
        self._closed.set()

        process = self._process
        if process is None:
            return
        if self._config.terminate_on_cancel:
            try:
                process.terminate()
            except OSError as e:
                logger.debug("Terminate for run %s failed: %s", self.run_id, e)
            else:
                logger.debug("Terminated context for run %s", self.run_id)
        else:
            logger.debug("Abandoned context for run %s; it will finish unobserved", self.run_id)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the pump thread to finish. Returns True if it did."""
        thread = self._pump_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ── Properties ────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def started(self) -> bool:
        return self._process is not None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    @property
    def exitcode(self) -> int | None:
        return None if self._process is None else self._process.exitcode

    @property
    def terminal_seen(self) -> bool:
        """True once the guest reported an error or completion."""
        return self._terminal_seen

    # ── Internal helpers ──────────────────────────────────────────────

    def _pump(self) -> None:
        """Read the guest queue until the process has exited and the queue is empty."""
        process = self._process
        queue = self._queue
        poll = self._config.poll_interval_seconds
        try:
            while True:
                try:
                    payload = queue.get(timeout=poll)
                except Empty:
                    if process.is_alive():
                        continue
                    self._drain(queue, poll)
                    break
                except (EOFError, OSError, ValueError) as e:
                    logger.debug("Queue for run %s became unreadable: %s", self.run_id, e)
                    break
                self._handle(payload)

            process.join(self._config.terminate_grace_seconds)
            if process.is_alive():
                process.kill()
                process.join(self._config.terminate_grace_seconds)
            logger.debug("Context for run %s exited with code %s", self.run_id, process.exitcode)

            if not self._closed.is_set() and not self._terminal_seen:
                text = f"Execution context exited unexpectedly (exit code {process.exitcode})"
                logger.warning("Run %s: %s", self.run_id, text)
                self._terminal_seen = True
                self._deliver(Message.error(self.run_id, text))
        finally:
            queue.close()

    def _drain(self, queue: Any, poll: float) -> None:
        while True:
            try:
                payload = queue.get(timeout=poll)
            except Empty:
                return
            except (EOFError, OSError, ValueError) as e:
                logger.debug("Queue for run %s became unreadable: %s", self.run_id, e)
                return
            self._handle(payload)

    def _handle(self, payload: Any) -> None:
        try:
            message = Message.from_dict(payload)
        except MessageFormatError as e:
            logger.error("Dropping malformed payload from run %s: %s", self.run_id, e)
            return

        if message.run_id != self.run_id:
            logger.warning(
                "Context for run %s sent a message tagged %s; dropping it",
                self.run_id,
                message.run_id,
            )
            return

        if message.is_terminal:
            self._terminal_seen = True
        if self._closed.is_set():
            return
        self._deliver(message)
