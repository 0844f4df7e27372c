"""
Guest-side bootstrap of the isolated execution context.

Everything here runs inside the spawned guest process. User code executes in
a fresh namespace whose ``__builtins__`` carries an instrumented ``print``;
the process-wide ``builtins`` module is left alone. The emit callable handed
to ``Instrumentation`` is the only way results leave the process.
"""

from __future__ import annotations

import builtins
import os
import sys
import threading
import traceback
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, Callable

from .messages import Message

Emit = Callable[[Message], None]

# Always kept so the interpreter, locale and temp files keep working.
_BASELINE_ENV = frozenset(
    {"PATH", "LANG", "LC_ALL", "LC_CTYPE", "TZ", "TMPDIR", "TEMP", "TMP", "SYSTEMROOT"}
)


@dataclass
class GuestOptions:
    """Picklable settings handed to the guest process."""

    echo_output: bool = True
    filename: str = "<playground>"
    env_allowlist: list[str] = field(default_factory=list)


def describe_error(exc: BaseException) -> str:
    """Human-readable text for an error: its message, else its type name."""
    try:
        text = str(exc.code) if isinstance(exc, SystemExit) else str(exc)
    except Exception:
        text = ""
    return text if isinstance(text, str) and text else type(exc).__name__


def scrub_environment(allowlist: list[str] | None = None) -> None:
    """Drop host environment variables the guest was not granted."""
    keep = _BASELINE_ENV | set(allowlist or [])
    for key in list(os.environ):
        if key not in keep:
            del os.environ[key]


class TerminalLatch:
    """Lets exactly one terminal event (error or done) through."""

    def __init__(self):
        self._lock = threading.Lock()
        self._fired = False

    def claim(self) -> bool:
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            return True

    @property
    def fired(self) -> bool:
        return self._fired


class Instrumentation:
    """
    Capture hooks for one run.

    Converts ``print`` calls into log messages and uncaught errors into a
    single error message, all tagged with the run id.
    """

    def __init__(self, run_id: str, emit: Emit, *, echo_output: bool = True):
        self.run_id = run_id
        self._emit = emit
        self._echo_output = echo_output
        self._latch = TerminalLatch()
        self._real_print = builtins.print
        self._saved_hooks: tuple[Any, Any] | None = None

    @property
    def finished(self) -> bool:
        """True once an error or completion has been reported."""
        return self._latch.fired

    def make_print(self) -> Callable[..., None]:
        """Build the ``print`` replacement exposed to user code."""
        real_print = self._real_print

        def _print(*args: Any, sep: str | None = " ", end: str | None = "\n", file=None, flush=False):
            if file is not None and file is not sys.stdout:
                real_print(*args, sep=sep, end=end, file=file, flush=flush)
                return
            if sep is not None and not isinstance(sep, str):
                raise TypeError(f"sep must be None or a string, not {type(sep).__name__}")
            if end is not None and not isinstance(end, str):
                raise TypeError(f"end must be None or a string, not {type(end).__name__}")
            if self._echo_output:
                real_print(*args, sep=sep, end=end, file=file, flush=flush)
            self.emit_log((" " if sep is None else sep).join(str(arg) for arg in args))

        _print.__name__ = "print"
        _print.__qualname__ = "print"
        _print.__doc__ = real_print.__doc__
        return _print

    def build_namespace(self) -> dict[str, Any]:
        """Fresh globals for user code with the instrumented builtins."""
        guest_builtins = dict(vars(builtins))
        guest_builtins["print"] = self.make_print()
        return {"__name__": "__main__", "__doc__": None, "__builtins__": guest_builtins}

    def emit_log(self, text: str) -> None:
        self._emit(Message.log(self.run_id, text))

    def report_error(self, exc: BaseException, tb: TracebackType | None) -> bool:
        """
        Report an error unless a terminal event was already reported.

        Refused reports are written to the guest's stderr so they stay visible
        to developers.

        Returns:
            True if the error became the run's terminal message.
        """
        text = describe_error(exc)
        try:
            detail = "".join(traceback.format_exception(type(exc), exc, tb))
        except Exception:
            detail = f"{type(exc).__name__}: {text}\n"
        if not self._latch.claim():
            sys.stderr.write(detail)
            return False
        self._emit(Message.error(self.run_id, text, detail=detail))
        return True

    def report_done(self) -> bool:
        if not self._latch.claim():
            return False
        self._emit(Message.done(self.run_id))
        return True

    def install_hooks(self) -> None:
        """Route uncaught errors in the guest process through ``report_error``."""

        def _excepthook(exc_type, exc, tb):
            self.report_error(exc if exc is not None else exc_type(), tb)

        def _thread_excepthook(args):
            if args.exc_type is SystemExit:
                return
            exc = args.exc_value if args.exc_value is not None else args.exc_type()
            self.report_error(exc, args.exc_traceback)

        self._saved_hooks = (sys.excepthook, threading.excepthook)
        sys.excepthook = _excepthook
        threading.excepthook = _thread_excepthook

    def uninstall_hooks(self) -> None:
        if self._saved_hooks is None:
            return
        sys.excepthook, threading.excepthook = self._saved_hooks
        self._saved_hooks = None


def _user_traceback(exc: BaseException) -> TracebackType | None:
    # Skip the execute_source frame; compile errors have no user frames at all.
    tb = exc.__traceback__
    return tb.tb_next if tb is not None else None


def execute_source(
    source_code: str,
    instrumentation: Instrumentation,
    *,
    filename: str = "<playground>",
) -> bool:
    """
    Compile and run user code as one unit inside the error boundary.

    Syntax errors and runtime errors are reported the same way. ``SystemExit``
    with a zero or empty code counts as normal completion.

    Returns:
        True if the code ran to completion.
    """
    namespace = instrumentation.build_namespace()
    try:
        code = compile(source_code, filename, "exec")
        exec(code, namespace)
    except SystemExit as exc:
        if exc.code is None or exc.code == 0:
            instrumentation.report_done()
            return True
        instrumentation.report_error(exc, _user_traceback(exc))
        return False
    except BaseException as exc:
        instrumentation.report_error(exc, _user_traceback(exc))
        return False

    instrumentation.report_done()
    return True


def _join_user_threads() -> None:
    current = threading.current_thread()
    for thread in threading.enumerate():
        if thread is current or thread.daemon:
            continue
        thread.join()


def guest_main(run_id: str, source_code: str, queue: Any, options: GuestOptions) -> None:
    """
    Process entry point of the isolated execution context.

    Output from non-daemon threads started by the user code is still routed
    after completion is reported; the queue is flushed once they finish.
    """

    def emit(message: Message) -> None:
        queue.put(message.to_dict())

    scrub_environment(options.env_allowlist)
    instrumentation = Instrumentation(run_id, emit, echo_output=options.echo_output)
    instrumentation.install_hooks()
    try:
        execute_source(source_code, instrumentation, filename=options.filename)
        _join_user_threads()
    finally:
        instrumentation.uninstall_hooks()
        queue.close()
        queue.join_thread()
