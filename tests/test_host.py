"""Tests for the execution host run lifecycle."""

import time
from textwrap import dedent

import pytest

import pyplayground.execution.host as host_module
from pyplayground.core.config import SandboxConfig
from pyplayground.core.exceptions import ContextStartError, UserCodeError
from pyplayground.execution.host import ExecutionHost, RunSnapshot, RunStatus
from pyplayground.sandbox.messages import Message

RUN_TIMEOUT = 30.0


def _wait_until(predicate, timeout: float = RUN_TIMEOUT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class _FakeContext:
    """Context double that records lifecycle calls and never spawns."""

    instances: list["_FakeContext"] = []

    def __init__(self, run_id, source_code, deliver, config):
        self.run_id = run_id
        self.source_code = source_code
        self.deliver = deliver
        self.config = config
        self.started = False
        self.closed = False
        _FakeContext.instances.append(self)

    def start(self):
        self.started = True

    def close(self):
        self.closed = True


@pytest.fixture
def fake_host():
    _FakeContext.instances = []
    with ExecutionHost(SandboxConfig(echo_output=False), context_factory=_FakeContext) as h:
        yield h


# ---------------------------------------------------------------------------
# End-to-end scenarios with real guest processes
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_output_then_error(self, host):
        host.start_run('print("hi")\nraise Exception("oops")')
        snapshot = host.wait(RUN_TIMEOUT)

        assert snapshot.output_lines == ("hi",)
        assert snapshot.status is RunStatus.FAILED
        assert snapshot.error_message == "oops"
        assert "Traceback" in snapshot.error_detail

    def test_empty_source_completes(self, host):
        host.start_run("")
        snapshot = host.wait(RUN_TIMEOUT)

        assert snapshot.output_lines == ()
        assert snapshot.status is RunStatus.COMPLETED
        assert snapshot.error_message is None

    def test_loop_output(self, host):
        host.start_run("for i in range(3):\n    print(i)")
        snapshot = host.wait(RUN_TIMEOUT)
        assert snapshot.output_lines == ("0", "1", "2")
        assert snapshot.status is RunStatus.COMPLETED

    def test_log_fidelity(self, host):
        host.start_run('print(1, 2)\nprint("x")')
        assert host.wait(RUN_TIMEOUT).output_lines == ("1 2", "x")
        assert host.output_lines == ["1 2", "x"]

    def test_syntax_error_fails_run(self, host):
        host.start_run("def broken(:\n    pass")
        snapshot = host.wait(RUN_TIMEOUT)
        assert snapshot.status is RunStatus.FAILED
        assert snapshot.output_lines == ()

    def test_host_usable_after_error(self, host):
        host.start_run('raise ValueError("boom")')
        failed = host.wait(RUN_TIMEOUT)
        assert failed.status is RunStatus.FAILED
        assert failed.error_message == "boom"

        host.start_run('print("again")')
        snapshot = host.wait(RUN_TIMEOUT)
        assert snapshot.status is RunStatus.COMPLETED
        assert snapshot.output_lines == ("again",)
        assert snapshot.error_message is None
        assert snapshot.run_id != failed.run_id

    def test_unexpected_exit_fails_run(self, host):
        host.start_run("import os\nos._exit(3)")
        snapshot = host.wait(RUN_TIMEOUT)
        assert snapshot.status is RunStatus.FAILED
        assert "exit code 3" in snapshot.error_message

    def test_late_thread_output_routed_to_same_run(self, host):
        source = dedent(
            """
            import threading
            import time

            def work():
                time.sleep(0.3)
                print("late")

            threading.Thread(target=work).start()
            print("early")
            """
        )
        host.start_run(source)
        snapshot = host.wait(RUN_TIMEOUT)
        assert snapshot.status is RunStatus.COMPLETED
        assert _wait_until(lambda: host.output_lines == ["early", "late"])
        assert host.status is RunStatus.COMPLETED


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------


class TestIsolation:
    def test_host_environment_is_hidden(self, host, monkeypatch):
        monkeypatch.setenv("PYPLAYGROUND_TEST_SECRET", "s3cret")
        host.start_run('import os\nprint(os.environ.get("PYPLAYGROUND_TEST_SECRET"))')
        assert host.wait(RUN_TIMEOUT).output_lines == ("None",)

    def test_allowlisted_environment_is_visible(self, monkeypatch):
        monkeypatch.setenv("PYPLAYGROUND_TEST_SHARED", "shared")
        config = SandboxConfig(echo_output=False, env_allowlist=["PYPLAYGROUND_TEST_SHARED"])
        with ExecutionHost(config) as h:
            h.start_run('import os\nprint(os.environ.get("PYPLAYGROUND_TEST_SHARED"))')
            assert h.wait(RUN_TIMEOUT).output_lines == ("shared",)

    def test_guest_cannot_mutate_host_modules(self, host):
        source = dedent(
            """
            import pyplayground.execution.host as h
            h.TAMPERED = True
            h.RunStatus = None
            print(hasattr(h, "TAMPERED"))
            """
        )
        host.start_run(source)
        snapshot = host.wait(RUN_TIMEOUT)

        assert snapshot.output_lines == ("True",)
        assert not hasattr(host_module, "TAMPERED")
        assert host_module.RunStatus is RunStatus

    def test_guest_globals_are_empty(self, host):
        host.start_run("print(sorted(k for k in globals() if not k.startswith('__')))")
        assert host.wait(RUN_TIMEOUT).output_lines == ("[]",)


# ---------------------------------------------------------------------------
# Reset and supersession
# ---------------------------------------------------------------------------


class TestResetAndRestart:
    def test_reset_from_idle(self, host):
        host.reset_run()
        host.reset_run()
        assert host.snapshot() == RunSnapshot()
        assert host.status is RunStatus.IDLE
        assert host.output_lines == []
        assert host.error_message is None

    def test_reset_mid_run(self, host):
        host.start_run('print("started")\nimport time\ntime.sleep(60)')
        assert _wait_until(lambda: host.output_lines == ["started"])
        host.reset_run()

        assert host.snapshot() == RunSnapshot()
        time.sleep(0.2)
        assert host.snapshot() == RunSnapshot()

    def test_reset_after_failure(self, host):
        host.start_run('raise RuntimeError("x")')
        host.wait(RUN_TIMEOUT)
        host.reset_run()
        assert host.snapshot().to_dict() == {
            "run_id": None,
            "status": "idle",
            "output_lines": [],
            "error_message": None,
        }

    def test_restart_ignores_superseded_run(self):
        config = SandboxConfig(echo_output=False, terminate_on_cancel=False)
        with ExecutionHost(config) as h:
            h.start_run('import time\ntime.sleep(0.5)\nprint("late from A")\nraise SystemExit(9)')
            h.start_run('print("b")')
            snapshot = h.wait(RUN_TIMEOUT)
            assert snapshot.output_lines == ("b",)

            # Give run A time to finish and emit.
            time.sleep(1.5)
            assert h.output_lines == ["b"]
            assert h.status is RunStatus.COMPLETED
            assert h.error_message is None

    def test_wait_returns_when_superseded(self, host):
        first = host.start_run("import time\ntime.sleep(60)")
        assert host.wait(0.2).status is RunStatus.RUNNING

        second = host.start_run('print("next")')
        assert second != first
        assert host.wait(RUN_TIMEOUT).run_id == second


# ---------------------------------------------------------------------------
# State machine (no processes)
# ---------------------------------------------------------------------------


class TestStateMachine:
    def test_start_creates_one_context_per_run(self, fake_host):
        first = fake_host.start_run("a")
        second = fake_host.start_run("b")

        assert [c.run_id for c in _FakeContext.instances] == [first, second]
        assert _FakeContext.instances[0].closed
        assert not _FakeContext.instances[1].closed
        assert _FakeContext.instances[1].source_code == "b"
        assert fake_host.status is RunStatus.RUNNING

    def test_messages_flow_through_channel(self, fake_host):
        run_id = fake_host.start_run("x")
        deliver = _FakeContext.instances[-1].deliver
        deliver(Message.log(run_id, "one"))
        deliver(Message.done(run_id))

        snapshot = fake_host.snapshot()
        assert snapshot.output_lines == ("one",)
        assert snapshot.status is RunStatus.COMPLETED

    def test_stale_messages_are_discarded(self, fake_host):
        old = fake_host.start_run("a")
        old_deliver = _FakeContext.instances[-1].deliver
        new = fake_host.start_run("b")

        old_deliver(Message.log(old, "stale"))
        fake_host.on_message(Message.log(old, "stale direct"))
        fake_host.on_message(Message.error("unknown-run", "boom"))

        snapshot = fake_host.snapshot()
        assert snapshot.run_id == new
        assert snapshot.output_lines == ()
        assert snapshot.status is RunStatus.RUNNING

    def test_messages_after_reset_are_discarded(self, fake_host):
        run_id = fake_host.start_run("a")
        fake_host.reset_run()
        fake_host.on_message(Message.log(run_id, "late"))
        assert fake_host.snapshot() == RunSnapshot()
        assert _FakeContext.instances[-1].closed

    def test_first_error_wins(self, fake_host):
        run_id = fake_host.start_run("a")
        fake_host.on_message(Message.error(run_id, "first"))
        fake_host.on_message(Message.error(run_id, "second"))
        fake_host.on_message(Message.done(run_id))

        assert fake_host.status is RunStatus.FAILED
        assert fake_host.error_message == "first"

    def test_error_after_done_is_ignored(self, fake_host):
        run_id = fake_host.start_run("a")
        fake_host.on_message(Message.done(run_id))
        fake_host.on_message(Message.error(run_id, "late"))

        assert fake_host.status is RunStatus.COMPLETED
        assert fake_host.error_message is None

    def test_logs_after_terminal_are_still_appended(self, fake_host):
        run_id = fake_host.start_run("a")
        fake_host.on_message(Message.log(run_id, "before"))
        fake_host.on_message(Message.error(run_id, "boom"))
        fake_host.on_message(Message.log(run_id, "after"))

        snapshot = fake_host.snapshot()
        assert snapshot.output_lines == ("before", "after")
        assert snapshot.status is RunStatus.FAILED

    def test_start_clears_previous_output(self, fake_host):
        run_id = fake_host.start_run("a")
        fake_host.on_message(Message.log(run_id, "old"))
        fake_host.on_message(Message.error(run_id, "old error"))

        fake_host.start_run("b")
        assert fake_host.output_lines == []
        assert fake_host.error_message is None
        assert fake_host.status is RunStatus.RUNNING

    def test_context_start_failure_marks_run_failed(self):
        class _Unstartable(_FakeContext):
            def start(self):
                raise ContextStartError(self.run_id, "spawn refused")

        with ExecutionHost(context_factory=_Unstartable) as h:
            run_id = h.start_run("print(1)")
            snapshot = h.snapshot()

        assert snapshot.run_id == run_id
        assert snapshot.status is RunStatus.FAILED
        assert "spawn refused" in snapshot.error_message

    def test_unusable_start_method_marks_run_failed(self):
        with ExecutionHost(SandboxConfig(start_method="bogus")) as h:
            run_id = h.start_run("print(1)")
            snapshot = h.wait(RUN_TIMEOUT)

        assert snapshot.run_id == run_id
        assert snapshot.status is RunStatus.FAILED
        assert "bogus" in snapshot.error_message

    def test_unexpected_factory_error_marks_run_failed(self):
        def _factory(run_id, source_code, deliver, config):
            raise RuntimeError("factory exploded")

        with ExecutionHost(context_factory=_factory) as h:
            h.start_run("print(1)")
            snapshot = h.wait(RUN_TIMEOUT)

        assert snapshot.status is RunStatus.FAILED
        assert "factory exploded" in snapshot.error_message

    def test_wait_when_idle_returns_immediately(self, fake_host):
        assert fake_host.wait(0) == RunSnapshot()

    def test_wait_times_out_while_running(self, fake_host):
        fake_host.start_run("a")
        assert fake_host.wait(0.05).status is RunStatus.RUNNING

    def test_listeners_see_every_change(self, fake_host):
        seen: list[RunSnapshot] = []
        fake_host.add_listener(seen.append)
        fake_host.add_listener(seen.append)  # registered once

        run_id = fake_host.start_run("a")
        fake_host.on_message(Message.log(run_id, "x"))
        fake_host.on_message(Message.done(run_id))
        fake_host.reset_run()

        assert [s.status for s in seen] == [
            RunStatus.RUNNING,
            RunStatus.RUNNING,
            RunStatus.COMPLETED,
            RunStatus.IDLE,
        ]
        assert seen[1].output_lines == ("x",)

        fake_host.remove_listener(seen.append)
        fake_host.start_run("b")
        assert len(seen) == 4

    def test_failing_listener_does_not_break_host(self, fake_host, caplog):
        def _broken(snapshot):
            raise RuntimeError("listener failed")

        fake_host.add_listener(_broken)
        run_id = fake_host.start_run("a")
        fake_host.on_message(Message.done(run_id))

        assert fake_host.status is RunStatus.COMPLETED
        assert "listener" in caplog.text.lower()

    def test_raise_for_error(self, fake_host):
        run_id = fake_host.start_run("a")
        fake_host.on_message(Message.error(run_id, "boom", detail="tb"))

        with pytest.raises(UserCodeError) as exc_info:
            fake_host.snapshot().raise_for_error()

        assert str(exc_info.value) == "boom"
        assert exc_info.value.run_id == run_id
        assert exc_info.value.detail == "tb"
        assert exc_info.value.recovery_hint

    def test_raise_for_error_is_silent_on_success(self, fake_host):
        run_id = fake_host.start_run("a")
        fake_host.on_message(Message.done(run_id))
        fake_host.snapshot().raise_for_error()
