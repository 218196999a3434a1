from __future__ import annotations

import threading

import pytest

from core.cancel import CancelToken
from core.errors import (
    Cancelled,
    ChannelError,
    CommandRejected,
    CommandTimeout,
    InstanceLost,
    InstanceTerminated,
    InternalError,
    SpawnFailed,
    StaleHandle,
    StatusCode,
    UnknownHandle,
    status_of,
)
from core.config import SupervisorConfig
from launcher.protocol import CommandKind
from supervisor import InstanceManager, LifecycleState, SimulatorHandle


def test_init_run_reset_transitions(fake_manager):
    h = fake_manager.init("/proj", "/proj/cfg.json")
    assert fake_manager.state(h) is LifecycleState.READY

    fake_manager.run(h)
    assert fake_manager.state(h) is LifecycleState.RUNNING
    fake_manager.run(h)
    assert fake_manager.state(h) is LifecycleState.RUNNING

    fake_manager.reset(h)
    assert fake_manager.state(h) is LifecycleState.READY
    fake_manager.reset(h)
    assert fake_manager.state(h) is LifecycleState.READY

    assert [e["to"] for e in fake_manager.events] == ["ready", "running", "running", "ready", "ready"]


def test_handles_get_fresh_generations(fake_manager):
    a = fake_manager.init("/a", "/a/cfg")
    b = fake_manager.init("/b", "/b/cfg")
    assert a != b
    assert a.pid != b.pid
    assert b.generation > a.generation
    assert set(fake_manager.live_handles()) == {a, b}


def test_unknown_and_null_handles_fail_validation(fake_manager, fake_launcher):
    fake_manager.init("/proj", "/proj/cfg")
    for bogus in (SimulatorHandle.NULL, SimulatorHandle(pid=424242, generation=1), None, 0):
        with pytest.raises(UnknownHandle):
            fake_manager.reset(bogus)
        with pytest.raises(UnknownHandle):
            fake_manager.run(bogus)
    # validation never reaches the channel
    assert fake_launcher.channels[0].commands == []


def test_wrong_generation_is_stale(fake_manager):
    h = fake_manager.init("/proj", "/proj/cfg")
    forged = SimulatorHandle(pid=h.pid, generation=h.generation + 5)
    with pytest.raises(StaleHandle):
        fake_manager.run(forged)
    assert fake_manager.state(h) is LifecycleState.READY


def test_recycled_pid_invalidates_old_handle(fake_manager, fake_launcher):
    old = fake_manager.init("/proj", "/proj/cfg")
    fake_manager.teardown(old)

    fake_launcher.next_pid = old.pid
    new = fake_manager.init("/proj", "/proj/cfg")
    assert new.pid == old.pid
    assert new.generation != old.generation

    with pytest.raises(StaleHandle):
        fake_manager.reset(old)
    fake_manager.run(new)
    assert fake_manager.state(new) is LifecycleState.RUNNING


def test_live_pid_cannot_be_bound_twice(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_launcher.next_pid = h.pid
    with pytest.raises(InternalError):
        fake_manager.init("/proj", "/proj/cfg2")
    # the duplicate process was torn down, the first binding is intact
    assert fake_launcher.processes[-1].alive is False
    fake_manager.run(h)


def test_process_exit_is_reported_once_then_terminated(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_manager.run(h)
    fake_launcher.processes[0].alive = False

    with pytest.raises(InstanceLost):
        fake_manager.reset(h)
    assert fake_manager.state(h) is LifecycleState.TERMINATED
    with pytest.raises(InstanceTerminated):
        fake_manager.run(h)
    with pytest.raises(InstanceTerminated):
        fake_manager.reset(h)
    assert h not in fake_manager.live_handles()


def test_channel_error_becomes_instance_lost(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_launcher.outcomes[CommandKind.RUN] = ChannelError("broken pipe")
    with pytest.raises(InstanceLost):
        fake_manager.run(h)
    assert fake_manager.state(h) is LifecycleState.TERMINATED
    assert h.pid in fake_launcher.terminated


def test_timeout_terminates_instance(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_launcher.outcomes[CommandKind.RESET] = CommandTimeout("no ack")
    with pytest.raises(CommandTimeout):
        fake_manager.reset(h)
    assert fake_manager.state(h) is LifecycleState.TERMINATED
    with pytest.raises(InstanceTerminated):
        fake_manager.run(h)


def test_nack_leaves_state_untouched(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_manager.run(h)
    fake_launcher.outcomes[CommandKind.RESET] = CommandRejected("busy", reason="refused")
    with pytest.raises(CommandRejected) as exc:
        fake_manager.reset(h)
    assert exc.value.reason == "refused"
    assert fake_manager.state(h) is LifecycleState.RUNNING


def test_cancel_before_send_has_no_side_effects(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    token = CancelToken()
    token.cancel()
    with pytest.raises(Cancelled):
        fake_manager.reset(h, cancel=token)
    assert fake_manager.state(h) is LifecycleState.READY
    assert fake_launcher.terminated == []


def test_cancel_mid_exchange_terminates(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_launcher.outcomes[CommandKind.RESET] = Cancelled("reset cancelled")
    with pytest.raises(Cancelled):
        fake_manager.reset(h, cancel=CancelToken())
    assert fake_manager.state(h) is LifecycleState.TERMINATED


def test_launch_failure_creates_no_record(fake_manager, fake_launcher):
    fake_launcher.launch_error = SpawnFailed("no such binary")
    with pytest.raises(SpawnFailed):
        fake_manager.init("/missing", "/missing/cfg")
    assert fake_manager.live_handles() == []
    assert list(fake_manager.events) == []


def test_query_does_not_change_state(fake_manager):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_manager.run(h)
    assert fake_manager.query(h) == {"state": "running"}
    assert fake_manager.state(h) is LifecycleState.RUNNING


def test_teardown_is_idempotent(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_manager.teardown(h)
    fake_manager.teardown(h)
    assert fake_launcher.terminated == [h.pid]
    assert fake_manager.state(h) is LifecycleState.TERMINATED


def test_concurrent_commands_on_one_handle_are_serialized(fake_manager, fake_launcher):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_launcher.delay = 0.005
    errors = []

    def worker(i: int) -> None:
        try:
            for j in range(10):
                if (i + j) % 2:
                    fake_manager.run(h)
                else:
                    fake_manager.reset(h)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert fake_launcher.overlaps == 0
    assert len(fake_launcher.channels[0].commands) == 60
    assert fake_manager.state(h) in (LifecycleState.READY, LifecycleState.RUNNING)


def test_commands_on_different_handles_do_not_interfere(fake_manager, fake_launcher):
    a = fake_manager.init("/a", "/a/cfg")
    b = fake_manager.init("/b", "/b/cfg")
    fake_manager.run(a)
    fake_launcher.processes[0].alive = False
    with pytest.raises(InstanceLost):
        fake_manager.reset(a)
    assert fake_manager.state(b) is LifecycleState.READY
    fake_manager.run(b)
    assert fake_manager.state(b) is LifecycleState.RUNNING


def test_shutdown_drains_and_blocks_new_inits(fake_launcher):
    with InstanceManager(launcher=fake_launcher) as mgr:
        a = mgr.init("/a", "/a/cfg")
        b = mgr.init("/b", "/b/cfg")
    assert sorted(fake_launcher.terminated) == sorted([a.pid, b.pid])
    assert mgr.live_handles() == []
    with pytest.raises(InternalError):
        mgr.init("/c", "/c/cfg")


def test_status_codes_follow_binding_convention(fake_manager, fake_launcher):
    code, h = status_of(fake_manager.init, "/proj", "/proj/cfg")
    assert code is StatusCode.OK
    assert status_of(fake_manager.run, h)[0] == 0
    assert status_of(fake_manager.reset, SimulatorHandle.NULL)[0] is StatusCode.UNKNOWN_HANDLE
    assert status_of(fake_manager.run, None)[0] is StatusCode.UNKNOWN_HANDLE

    fake_launcher.processes[0].alive = False
    assert status_of(fake_manager.reset, h)[0] is StatusCode.INSTANCE_LOST
    assert status_of(fake_manager.run, h)[0] is StatusCode.INSTANCE_TERMINATED


def test_event_log_exports_to_dataframe(fake_manager):
    h = fake_manager.init("/proj", "/proj/cfg")
    fake_manager.run(h)
    fake_manager.teardown(h)
    df = fake_manager.to_dataframe()
    assert list(df["to"]) == ["ready", "running", "terminated"]
    assert set(df["generation"]) == {h.generation}


def test_event_log_keeps_only_recent_history(fake_launcher):
    mgr = InstanceManager(launcher=fake_launcher, config=SupervisorConfig(event_history=3))
    h = mgr.init("/proj", "/proj/cfg")
    mgr.run(h)
    mgr.reset(h)
    mgr.run(h)
    assert [e["to"] for e in mgr.events] == ["running", "ready", "running"]
    assert len(mgr.to_dataframe()) == 3
    mgr.shutdown()
