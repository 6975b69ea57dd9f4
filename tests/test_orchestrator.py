"""End-to-end tests of the agent loop against the offline backend."""

import asyncio
from datetime import timedelta

import pytest

from conftest import reply
from devloop.agents import protocols as p
from devloop.agents.executor import Executor
from devloop.core.errors import TaskAlreadyRunningError
from devloop.orchestrator import ITERATION_LIMIT_REASON, LifecycleEvent, Orchestrator


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [e for e, _ in self.events]

    def of(self, event):
        return [payload for e, payload in self.events if e == event]


class Gate:
    """A generate_code handler that blocks until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, action, context):
        self.started.set()
        await self.release.wait()
        return {"files": []}


def _steps(*steps):
    return reply({"title": "t", "steps": list(steps)})


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def orchestrator(llm, memory, fs, agent_cfg, recorder):
    orch = Orchestrator(llm, memory, file_system=fs, config=agent_cfg)
    orch.subscribe(recorder)
    return orch


class TestFullRun:
    @pytest.mark.asyncio
    async def test_canned_conversation_completes(self, orchestrator, recorder, memory, workspace):
        task = await orchestrator.run_task("Scaffold a demo project")
        assert task.status == p.TaskStatus.COMPLETED
        assert (workspace / "README.md").read_text() == "# demo\n"

        names = recorder.names()
        assert names[0] == LifecycleEvent.TASK_STARTED
        assert names[1] == LifecycleEvent.PLAN_CREATED
        assert names[-1] == LifecycleEvent.TASK_COMPLETED
        assert names.count(LifecycleEvent.ACTION_EXECUTED) == 2
        assert [e["step_id"] for e in recorder.of(LifecycleEvent.ACTION_SELECTED)] == ["step-1", "step-2", None]

        plan = memory.get_latest_plan_for_task(task.id)
        assert plan.status == p.PlanStatus.COMPLETED
        assert all(s.status == p.StepStatus.COMPLETED for s in plan.steps)
        assert memory.get_final_report(task.id) is not None
        history = memory.get_recent_history(None, task_id=task.id)
        assert len(history) == 2 and all(h.result.ok for h in history)

        status = orchestrator.get_status(task.id)
        assert status.status == p.TaskStatus.COMPLETED
        assert status.progress == 100.0
        assert not status.running

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_the_run(self, orchestrator):
        def broken(event, payload):
            raise RuntimeError("listener bug")

        orchestrator.subscribe(broken)
        task = await orchestrator.run_task("Scaffold a demo project")
        assert task.status == p.TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unsubscribe(self, orchestrator, recorder):
        other = Recorder()
        unsubscribe = orchestrator.subscribe(other)
        unsubscribe()
        await orchestrator.run_task("Scaffold a demo project")
        assert other.events == []
        assert recorder.events


class TestFailures:
    @pytest.mark.asyncio
    async def test_iteration_limit(self, llm, memory, agent_cfg, recorder):
        orch = Orchestrator(llm, memory, config=agent_cfg.model_copy(update={"max_iterations": 1}))
        orch.subscribe(recorder)
        task = await orch.run_task("Scaffold a demo project")
        assert task.status == p.TaskStatus.FAILED
        assert task.last_error == ITERATION_LIMIT_REASON
        assert memory.get_final_report(task.id).error == ITERATION_LIMIT_REASON
        assert recorder.of(LifecycleEvent.TASK_FAILED)[0]["error"] == ITERATION_LIMIT_REASON

    @pytest.mark.asyncio
    async def test_consecutive_failures(self, backend, llm, memory, agent_cfg, recorder):
        async def explode(action, context):
            raise RuntimeError("kaboom")

        executor = Executor()
        executor.register_handler(p.ActionType.GENERATE_CODE, explode)
        backend.push(_steps({"id": "a"}, {"id": "b"}, {"id": "c"}, {"id": "d"}))
        orch = Orchestrator(llm, memory, executor=executor, config=agent_cfg)
        orch.subscribe(recorder)

        task = await orch.run_task("Doomed")
        assert task.status == p.TaskStatus.FAILED
        assert task.last_error == "kaboom"
        assert len(recorder.of(LifecycleEvent.ACTION_FAILED)) == agent_cfg.max_consecutive_failures
        plan = memory.get_latest_plan_for_task(task.id)
        assert [s.status for s in plan.blocked_steps()] == [p.StepStatus.BLOCKED] * 3

    @pytest.mark.asyncio
    async def test_blocked_steps_are_never_reported_as_completed(self, backend, llm, memory, agent_cfg, recorder):
        async def explode(action, context):
            raise RuntimeError("kaboom")

        executor = Executor()
        executor.register_handler(p.ActionType.GENERATE_CODE, explode)
        backend.push(_steps({"id": "only"}), reply({"needsPlanRevision": False, "recommendation": "carry on"}))
        orch = Orchestrator(llm, memory, executor=executor, config=agent_cfg)
        orch.subscribe(recorder)

        task = await orch.run_task("Doomed")
        assert task.status == p.TaskStatus.FAILED
        assert LifecycleEvent.TASK_COMPLETED not in recorder.names()
        assert any("Every remaining step is blocked (only)" in c["prompt"] for c in backend.calls)
        plan = memory.get_latest_plan_for_task(task.id)
        assert plan.get_step("only").status == p.StepStatus.BLOCKED
        assert plan.get_step("recovery-1") is not None
        assert plan.status != p.PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_deadlock_fails_without_forced_progress(self, backend, llm, memory, agent_cfg):
        config = agent_cfg.model_copy(update={"force_progress": False, "unblock_threshold": 2})
        backend.push(_steps({"id": "A", "dependencies": ["B"]}, {"id": "B", "dependencies": ["A"]}))
        task = await Orchestrator(llm, memory, config=config).run_task("Cyclic")
        assert task.status == p.TaskStatus.FAILED
        assert "forced progress is disabled" in task.last_error

    @pytest.mark.asyncio
    async def test_cycle_is_broken_by_forced_progress(self, backend, llm, memory, agent_cfg, recorder):
        config = agent_cfg.model_copy(update={"unblock_threshold": 2})
        backend.push(_steps({"id": "A", "dependencies": ["B"]}, {"id": "B", "dependencies": ["A"]}))
        orch = Orchestrator(llm, memory, config=config)
        orch.subscribe(recorder)
        task = await orch.run_task("Cyclic")

        selected = recorder.of(LifecycleEvent.ACTION_SELECTED)
        assert [s["action_type"] for s in selected[:3]] == ["unblock_plan", "unblock_plan", "generate_code"]
        assert selected[2]["force_progress"]
        assert selected[2]["step_id"] == "A"
        assert task.status == p.TaskStatus.COMPLETED


class TestControl:
    @pytest.mark.asyncio
    async def test_stop_discards_late_result(self, llm, memory, agent_cfg, recorder):
        gate = Gate()
        executor = Executor()
        executor.register_handler(p.ActionType.GENERATE_CODE, gate)
        orch = Orchestrator(llm, memory, executor=executor, config=agent_cfg)
        orch.subscribe(recorder)

        task_id = await orch.submit_task("Scaffold a demo project")
        await asyncio.wait_for(gate.started.wait(), timeout=5)
        assert orch.get_status(task_id).running

        history = orch.stop_task(task_id)
        assert len(history) == 1
        assert history[0].result is None

        gate.release.set()
        task = await orch.wait(task_id)
        assert task.status == p.TaskStatus.FAILED
        assert task.last_error == "stopped"
        assert memory.get_recent_history(None, task_id=task_id)[0].result is None
        assert LifecycleEvent.TASK_STOPPED in recorder.names()
        assert LifecycleEvent.ACTION_EXECUTED not in recorder.names()

    @pytest.mark.asyncio
    async def test_same_task_id_cannot_run_twice(self, llm, memory, agent_cfg):
        gate = Gate()
        executor = Executor()
        executor.register_handler(p.ActionType.GENERATE_CODE, gate)
        orch = Orchestrator(llm, memory, executor=executor, config=agent_cfg)

        await orch.submit_task("first", task_id="fixed")
        await asyncio.wait_for(gate.started.wait(), timeout=5)
        with pytest.raises(TaskAlreadyRunningError):
            await orch.submit_task("second", task_id="fixed")

        orch.stop_task("fixed")
        gate.release.set()
        await orch.wait("fixed")

    @pytest.mark.asyncio
    async def test_unknown_task(self, orchestrator):
        assert orchestrator.get_status("nope") is None
        with pytest.raises(KeyError):
            orchestrator.stop_task("nope")

    @pytest.mark.asyncio
    async def test_sweep_purges_idle_runs(self, orchestrator, memory):
        task = await orchestrator.run_task("Scaffold a demo project")
        assert orchestrator.sweep_idle() == []
        later = orchestrator.runs[task.id].last_activity + timedelta(seconds=orchestrator.config.idle_timeout + 1)
        assert orchestrator.sweep_idle(at=later) == [task.id]
        assert orchestrator.get_status(task.id) is None
        assert memory.get_task(task.id) is None

    @pytest.mark.asyncio
    async def test_dispose_cancels_the_sweeper(self, orchestrator):
        orchestrator.start()
        sweeper = orchestrator._sweeper
        await orchestrator.dispose()
        assert sweeper.cancelled()
        assert orchestrator._sweeper is None
