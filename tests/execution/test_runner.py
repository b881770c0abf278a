"""Tests for dbplane.execution: runner, transitions, children, deadlines and failures."""

from __future__ import annotations

from datetime import timedelta

import pytest

from dbplane.core.errors import EngineError
from dbplane.core.orm.tables import PageTable, ProcessTable
from dbplane.core.timestamps import generate_ulid
from dbplane.execution.program import CANCELLED_BY_DESTROY, Program, as_retval, step
from dbplane.execution.registry import ProgramRegistry
from dbplane.execution.runner import Runner, purge_exited
from dbplane.execution.signals import SignalStore


# =============================================================================
# Test programs
# =============================================================================


class Counter(Program):
    name = "TestCounter"

    @step
    def start(self):
        self.update_frame(n=self.frame.get("n", 0) + 1)
        if self.frame["n"] < 3:
            self.sleep_and_retry(10)
        self.advance("done")

    @step
    def done(self):
        self.return_({"n": self.frame["n"]})


class Doubler(Program):
    name = "TestDoubler"

    @step
    def start(self):
        self.return_({"doubled": self.frame["value"] * 2, "subject": self.subject_id})


class Caller(Program):
    name = "TestCaller"

    @step
    def start(self):
        self.call(Doubler, {"value": 21}, return_to="collect")

    @step
    def collect(self):
        self.update_frame(got=self.retval)
        self.advance("finish")

    @step
    def finish(self):
        self.return_({"got": self.frame["got"], "retval_now": self.retval})


class Child(Program):
    name = "TestChild"

    @step
    def start(self):
        self.return_(f"child {self.frame['i']}")


class Parent(Program):
    name = "TestParent"

    @step
    def start(self):
        for i in range(2):
            self.spawn_child(Child, {"i": i})
        self.advance("wait_children")

    @step
    def wait_children(self):
        harvested = self.harvest_children()
        self.update_frame(msgs=self.frame.get("msgs", []) + [r.value["msg"] for r in harvested])
        if self.is_leaf():
            self.return_(sorted(self.frame["msgs"]))
        self.yield_to_children()


class Slow(Program):
    name = "TestSlow"

    @step
    def start(self):
        self.set_deadline("done", 60)
        self.advance("poll")

    @step
    def poll(self):
        if not self.is_signaled("go"):
            self.sleep_and_retry(30)
        self.advance("done")

    @step
    def done(self):
        self.sleep_and_retry(3600)


class Idle(Program):
    name = "TestIdle"

    @step
    def start(self):
        self.sleep_and_retry(30)

    @step
    def destroy(self):
        self.return_("gone")


class Host(Program):
    name = "TestHost"

    @step
    def start(self):
        self.call(Idle, return_to="after")

    @step
    def after(self):
        self.update_frame(seen=self.retval)
        self.sleep_and_retry(30)

    @step
    def destroy(self):
        self.return_({"seen": self.frame.get("seen")})


class Flaky(Program):
    name = "TestFlaky"

    @step
    def start(self):
        self.update_frame(touched=True)
        self.signals.incr(self.process.id, "side_effect")
        raise RuntimeError("cloud said no")


class Wedged(Program):
    name = "TestWedged"

    @step
    def start(self):
        self.set_deadline("done", 60)
        self.advance("poll")

    @step
    def poll(self):
        raise RuntimeError("agent unreachable")


class Forgetful(Program):
    name = "TestForgetful"

    @step
    def start(self):
        self.update_frame(x=1)


class Lost(Program):
    name = "TestLost"

    @step
    def start(self):
        self.advance("nowhere")


TEST_PROGRAMS = (Counter, Doubler, Caller, Child, Parent, Slow, Idle, Host, Flaky, Wedged, Forgetful, Lost)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def registry() -> ProgramRegistry:
    registry = ProgramRegistry()
    for program in TEST_PROGRAMS:
        registry.register(program)
    return registry


@pytest.fixture
def engine_runner(session_factory, services, registry) -> Runner:
    return Runner(session_factory, services, registry=registry, owner_id="engine-test")


@pytest.fixture
def spawn(session_factory, clock):
    def _spawn(program: type[Program], frame: dict | None = None, step_name: str = "start") -> str:
        pid = generate_ulid()
        with session_factory() as session:
            session.add(ProcessTable(id=pid, program=program.name, step=step_name, stack=[frame or {}], due_at=clock.now()))
            session.commit()
        return pid

    return _spawn


@pytest.fixture
def load(session_factory):
    def _load(pid: str) -> ProcessTable:
        with session_factory() as session:
            return session.get(ProcessTable, pid)

    return _load


# =============================================================================
# Transitions
# =============================================================================


class TestAdvanceAndSleep:
    def test_sleep_defers_and_keeps_frame(self, engine_runner, spawn, load, clock):
        pid = spawn(Counter)
        outcome = engine_runner.run_once(pid)
        assert outcome.transition == "sleep"
        process = load(pid)
        assert process.stack[0]["n"] == 1
        assert (process.due_at - clock.now()).total_seconds() == 10
        assert engine_runner.due_process_ids() == []

    def test_runs_to_exit(self, engine_runner, spawn, load, clock):
        pid = spawn(Counter)
        for _ in range(3):
            engine_runner.run_once(pid)
            clock.advance(10)
        outcome = engine_runner.run_once(pid)
        assert outcome.transition == "exit"
        process = load(pid)
        assert process.is_terminal
        assert process.exit_value == {"n": 3}
        assert process.stack == []
        assert process.due_at is None

    def test_advance_is_due_immediately(self, engine_runner, spawn, clock):
        pid = spawn(Slow)
        outcome = engine_runner.run_once(pid)
        assert (outcome.transition, outcome.next_step) == ("advance", "poll")
        assert pid in engine_runner.due_process_ids()

    def test_terminal_process_is_not_run(self, engine_runner, spawn):
        pid = spawn(Doubler, {"value": 1})
        engine_runner.run_once(pid)
        assert engine_runner.run_once(pid) is None


class TestCallReturn:
    def test_call_pushes_frame_and_return_resumes(self, engine_runner, spawn, load):
        pid = spawn(Caller)
        outcome = engine_runner.run_once(pid)
        assert outcome.transition == "call"
        process = load(pid)
        assert process.program == "TestDoubler"
        assert len(process.stack) == 2
        assert process.stack[0]["link"] == ["TestCaller", "collect"]
        assert process.stack[0]["subject_id"] == pid

        outcome = engine_runner.run_once(pid)
        assert (outcome.transition, outcome.next_step) == ("return", "collect")
        assert load(pid).retval == {"doubled": 42, "subject": pid}

    def test_retval_lasts_one_invocation(self, engine_runner, spawn, load):
        pid = spawn(Caller)
        engine_runner.drain()
        assert load(pid).exit_value == {"got": {"doubled": 42, "subject": pid}, "retval_now": None}

    def test_bare_values_are_wrapped(self):
        assert as_retval("done") == {"msg": "done"}
        assert as_retval({"a": 1}) == {"a": 1}
        assert as_retval(None) is None


class TestChildren:
    def test_yield_ticks_each_child_once(self, engine_runner, spawn, session_factory):
        pid = spawn(Parent)
        engine_runner.run_once(pid)
        outcome = engine_runner.run_once(pid)
        assert outcome.transition == "yield"
        with session_factory() as session:
            children = list(session.query(ProcessTable).filter(ProcessTable.parent_id == pid))
        assert len(children) == 2
        assert all(c.is_terminal for c in children)

    def test_harvest_collects_exit_values(self, engine_runner, spawn, load, session_factory):
        pid = spawn(Parent)
        engine_runner.drain()
        assert load(pid).exit_value == {"msg": ["child 0", "child 1"]}
        with session_factory() as session:
            assert session.query(ProcessTable).filter(ProcessTable.parent_id == pid).count() == 0

    def test_children_inherit_subject(self, engine_runner, spawn, session_factory):
        pid = spawn(Parent, {"subject_id": "node-1"})
        engine_runner.run_once(pid)
        with session_factory() as session:
            frames = [c.stack[0] for c in session.query(ProcessTable).filter(ProcessTable.parent_id == pid)]
        assert all(f["subject_id"] == "node-1" for f in frames)


# =============================================================================
# Deadlines
# =============================================================================


class TestDeadlines:
    def test_expired_deadline_pages_once_and_clears(self, engine_runner, spawn, load, clock, session_factory, notifier):
        pid = spawn(Slow)
        engine_runner.run_once(pid)
        engine_runner.run_once(pid)
        clock.advance(61)
        engine_runner.run_once(pid)
        assert load(pid).deadline_paged
        assert [p.tag for p in notifier.opened] == [f"Deadline-{pid}-TestSlow-done"]

        clock.advance(30)
        engine_runner.run_once(pid)
        assert len(notifier.opened) == 1

        with session_factory() as session:
            SignalStore(session).incr_and_wake(pid, "go", clock.now())
            session.commit()
        engine_runner.run_once(pid)
        process = load(pid)
        assert process.step == "done"
        assert process.deadline_at is None
        assert not process.deadline_paged
        assert len(notifier.resolved) == 1
        with session_factory() as session:
            assert session.query(PageTable).filter(PageTable.resolved_at.is_(None)).count() == 0

    def test_deadline_survives_a_failing_step(self, engine_runner, spawn, load, clock, session_factory, notifier):
        pid = spawn(Wedged)
        engine_runner.run_once(pid)
        clock.advance(61)
        for _ in range(3):
            assert engine_runner.run_once(pid).failed

        process = load(pid)
        assert process.step == "poll"
        assert process.deadline_paged
        assert process.error_count == 3
        assert [p.tag for p in notifier.opened] == [f"Deadline-{pid}-TestWedged-done"]
        with session_factory() as session:
            assert session.query(PageTable).filter(PageTable.resolved_at.is_(None)).count() == 1

    def test_met_deadline_never_pages(self, engine_runner, spawn, load, clock, session_factory, notifier):
        pid = spawn(Slow)
        engine_runner.run_once(pid)
        with session_factory() as session:
            SignalStore(session).incr(pid, "go")
            session.commit()
        engine_runner.run_once(pid)
        assert load(pid).deadline_at is None
        assert notifier.opened == []


# =============================================================================
# Destroy interrupt
# =============================================================================


class TestDestroyInterrupt:
    def test_destroy_preempts_current_step(self, engine_runner, spawn, load, session_factory, clock):
        pid = spawn(Idle)
        engine_runner.run_once(pid)
        with session_factory() as session:
            SignalStore(session).incr_and_wake(pid, "destroy", clock.now())
            session.commit()
        outcome = engine_runner.run_once(pid)
        assert (outcome.transition, outcome.next_step) == ("advance", "destroy")
        engine_runner.run_once(pid)
        assert load(pid).exit_value == {"msg": "gone"}

    def test_nested_frame_returns_cancelled_first(self, engine_runner, spawn, load, session_factory, clock):
        pid = spawn(Host)
        engine_runner.run_once(pid)
        engine_runner.run_once(pid)
        assert load(pid).program == "TestIdle"
        with session_factory() as session:
            SignalStore(session).incr_and_wake(pid, "destroy", clock.now())
            session.commit()

        outcome = engine_runner.run_once(pid)
        assert (outcome.transition, outcome.next_step) == ("return", "after")
        outcome = engine_runner.run_once(pid)
        assert outcome.next_step == "destroy"
        engine_runner.run_once(pid)
        assert load(pid).exit_value == {"seen": None}

    def test_cancelled_retval(self, engine_runner, spawn, load, session_factory, clock):
        pid = spawn(Host)
        engine_runner.run_once(pid)
        engine_runner.run_once(pid)
        with session_factory() as session:
            SignalStore(session).incr_and_wake(pid, "destroy", clock.now())
            session.commit()
        engine_runner.run_once(pid)
        assert load(pid).retval == {"msg": CANCELLED_BY_DESTROY}


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    def test_exception_rolls_back_step_writes(self, engine_runner, spawn, load, session_factory):
        pid = spawn(Flaky)
        outcome = engine_runner.run_once(pid)
        assert outcome.failed
        assert "RuntimeError: cloud said no" in outcome.error
        process = load(pid)
        assert process.step == "start"
        assert process.stack == [{}]
        assert process.error_count == 1
        assert "cloud said no" in process.last_error
        with session_factory() as session:
            assert not SignalStore(session).is_set(pid, "side_effect")

    def test_failed_process_is_retried(self, engine_runner, spawn, load):
        pid = spawn(Flaky)
        engine_runner.run_once(pid)
        engine_runner.run_once(pid)
        assert load(pid).error_count == 2
        assert pid in engine_runner.due_process_ids()

    def test_step_without_transition_is_an_error(self, engine_runner, spawn, load):
        pid = spawn(Forgetful)
        outcome = engine_runner.run_once(pid)
        assert "EngineError" in outcome.error
        assert load(pid).stack == [{}]

    def test_unknown_step_is_an_error(self, engine_runner, spawn):
        outcome = engine_runner.run_once(spawn(Lost))
        assert "nowhere" in outcome.error

    def test_unknown_program_is_an_error(self, engine_runner, session_factory, clock, load):
        with session_factory() as session:
            session.add(ProcessTable(id="ghost", program="Ghost", step="start", stack=[{}], due_at=clock.now()))
            session.commit()
        outcome = engine_runner.run_once("ghost")
        assert outcome.failed
        assert "Unknown program" in load("ghost").last_error

    def test_success_clears_last_error(self, engine_runner, session_factory, clock, load):
        with session_factory() as session:
            session.add(
                ProcessTable(id="p", program="TestIdle", step="start", stack=[{}], due_at=clock.now(), last_error="old")
            )
            session.commit()
        engine_runner.run_once("p")
        assert load("p").last_error is None


# =============================================================================
# Scheduling and housekeeping
# =============================================================================


class TestScheduling:
    def test_due_order_and_limit(self, engine_runner, spawn, clock):
        first = spawn(Idle)
        clock.advance(1)
        second = spawn(Idle)
        assert engine_runner.due_process_ids(limit=1) == [first]
        assert engine_runner.due_process_ids() == [first, second]

    def test_drain_stops_when_nothing_is_due(self, engine_runner, spawn):
        spawn(Doubler, {"value": 2})
        spawn(Idle)
        assert engine_runner.drain() == 2

    def test_purge_exited(self, engine_runner, spawn, session_factory, clock):
        done = spawn(Doubler, {"value": 2})
        alive = spawn(Idle)
        engine_runner.drain()
        clock.advance(31 * 86400)
        with session_factory() as session:
            assert purge_exited(session, timedelta(days=30), clock.now()) == 1
            session.commit()
            assert session.get(ProcessTable, done) is None
            assert session.get(ProcessTable, alive) is not None


class TestRegistry:
    def test_duplicate_name_rejected(self, registry):
        class Impostor(Program):
            name = "TestIdle"

        with pytest.raises(EngineError):
            registry.register(Impostor)

    def test_reregistering_same_class_is_fine(self, registry):
        assert registry.register(Idle) is Idle
        assert registry.has("TestIdle")

    def test_step_table_is_inherited(self):
        class Sub(Idle):
            @step
            def extra(self):
                self.advance("start")

        assert set(Sub.steps) == {"start", "destroy", "extra"}
        assert Sub.name == "Sub"
