"""Tests for plan creation, next-action selection, unblocking and revision."""

import pytest

from conftest import make_plan, reply
from devloop.agents import protocols as p
from devloop.agents.planner import Planner, plan_context
from devloop.core.errors import InvalidTransitionError, PlanDeadlockError, PlanError, QuotaExceededError
from devloop.core.llm import CompletionService


def _state(plan):
    return p.PerceivedState(current_plan=p.CurrentPlanView(id=plan.id))


def _finish(plan, step_id):
    plan.mark_step(step_id, p.StepStatus.IN_PROGRESS)
    plan.mark_step(step_id, p.StepStatus.COMPLETED)


class TestInitialPlan:
    @pytest.mark.asyncio
    async def test_steps_are_normalized_and_pending(self, backend, llm, agent_cfg, task):
        backend.push(reply({
            "title": "Calc",
            "steps": [
                {"id": "s1", "title": "write", "type": "implementation", "status": "completed"},
                {"id": "s1", "title": "dup", "type": "magic", "dependencies": ["s1", "ghost"]},
            ],
        }))
        plan = await Planner(llm, agent_cfg).create_initial_plan(task)
        assert [s.id for s in plan.steps] == ["s1", "s1-2"]
        assert all(s.status == p.StepStatus.PENDING for s in plan.steps)
        assert plan.steps[1].type == p.StepType.IMPLEMENTATION
        assert plan.steps[1].dependencies == ["s1"]
        assert plan.task_id == task.id

    @pytest.mark.asyncio
    async def test_unparseable_plan_falls_back_to_single_step(self, backend, llm, agent_cfg, task):
        backend.push("I would rather not answer in JSON.")
        plan = await Planner(llm, agent_cfg).create_initial_plan(task)
        assert [s.id for s in plan.steps] == ["step-1"]
        assert task.description in plan.steps[0].description

    @pytest.mark.asyncio
    async def test_completion_failure_falls_back(self, backend, llm, agent_cfg, task):
        backend.push(QuotaExceededError("quota", status_code=429))
        plan = await Planner(llm, agent_cfg).create_initial_plan(task)
        assert len(plan.steps) == 1


class TestNextAction:
    @pytest.mark.asyncio
    async def test_single_step_then_completion(self, llm, agent_cfg, task):
        planner = Planner(llm, agent_cfg)
        plan = make_plan(task.id, {"id": "only", "title": "do it"})
        assert [s.id for s in plan.runnable_steps()] == ["only"]

        action = await planner.determine_next_action(_state(plan), plan)
        assert action.type == p.ActionType.GENERATE_CODE
        assert action.step_id == "only"

        _finish(plan, "only")
        done = await planner.determine_next_action(_state(plan), plan)
        assert done.type == p.ActionType.COMPLETION

    @pytest.mark.asyncio
    async def test_dependency_order(self, llm, agent_cfg, task):
        planner = Planner(llm, agent_cfg)
        plan = make_plan(task.id, {"id": "step1"}, {"id": "step2", "dependencies": ["step1"]})

        first = await planner.determine_next_action(_state(plan), plan)
        assert first.step_id == "step1"
        # still step1 while it has not completed
        plan.mark_step("step1", p.StepStatus.IN_PROGRESS)
        assert plan.runnable_steps() == []

        plan.mark_step("step1", p.StepStatus.COMPLETED)
        second = await planner.determine_next_action(_state(plan), plan)
        assert second.step_id == "step2"
        assert [d.id for d in second.dependencies] == ["step1"]

    @pytest.mark.asyncio
    async def test_step_types_map_to_actions(self, backend, llm, agent_cfg, task):
        backend.push(reply({"queries": ["python calculator", "  ", "pytest basics", "x", "y"]}))
        planner = Planner(llm, agent_cfg)
        plan = make_plan(
            task.id,
            {"id": "r", "type": "research", "title": "look around"},
            {"id": "a", "type": "architecture"},
            {"id": "t", "type": "testing"},
            {"id": "d", "type": "deployment"},
        )
        state = _state(plan)
        research = await planner.action_for_step(plan.get_step("r"), state, plan)
        assert research.type == p.ActionType.RESEARCH
        assert research.queries == ["python calculator", "pytest basics", "x"]
        assert (await planner.action_for_step(plan.get_step("a"), state, plan)).type == p.ActionType.ARCHITECTURE
        assert (await planner.action_for_step(plan.get_step("t"), state, plan)).type == p.ActionType.TESTING
        assert (await planner.action_for_step(plan.get_step("d"), state, plan)).type == p.ActionType.DEPLOYMENT

    @pytest.mark.asyncio
    async def test_research_queries_fall_back_to_description(self, backend, llm, agent_cfg, task):
        backend.push("no queries here")
        planner = Planner(llm, agent_cfg)
        plan = make_plan(task.id, {"id": "r", "type": "research", "description": "compare parsers"})
        action = await planner.action_for_step(plan.get_step("r"), _state(plan), plan)
        assert action.queries == ["compare parsers"]


class TestUnblocking:
    @pytest.mark.asyncio
    async def test_cycle_forces_progress_after_threshold(self, llm, agent_cfg, task):
        planner = Planner(llm, agent_cfg)
        plan = make_plan(task.id, {"id": "A", "dependencies": ["B"]}, {"id": "B", "dependencies": ["A"]})

        for attempt in range(1, 6):
            action = await planner.determine_next_action(_state(plan), plan)
            assert action.type == p.ActionType.UNBLOCK_PLAN
            assert action.unblock_attempt == attempt
            assert {b.step_id for b in action.blocked_steps} == {"A", "B"}

        forced = await planner.determine_next_action(_state(plan), plan)
        assert forced.type == p.ActionType.GENERATE_CODE
        assert forced.force_progress
        assert forced.step_id == "A"
        assert forced.step.dependencies == []
        assert forced.dependencies == []
        assert plan.get_step("A").dependencies == ["B"]
        assert planner.unblock_attempts[task.id] == 0

    @pytest.mark.asyncio
    async def test_deadlock_without_forced_progress(self, llm, agent_cfg, task):
        planner = Planner(llm, agent_cfg.model_copy(update={"force_progress": False, "unblock_threshold": 2}))
        plan = make_plan(task.id, {"id": "A", "dependencies": ["B"]}, {"id": "B", "dependencies": ["A"]})
        for _ in range(2):
            await planner.determine_next_action(_state(plan), plan)
        with pytest.raises(PlanDeadlockError):
            await planner.determine_next_action(_state(plan), plan)

    @pytest.mark.asyncio
    async def test_runnable_step_resets_counter(self, llm, agent_cfg, task):
        planner = Planner(llm, agent_cfg)
        plan = make_plan(task.id, {"id": "A", "dependencies": ["B"]}, {"id": "B", "dependencies": ["A"]})
        await planner.determine_next_action(_state(plan), plan)
        assert planner.unblock_attempts[task.id] == 1

        free = make_plan(task.id, {"id": "C"})
        await planner.determine_next_action(_state(free), free)
        assert task.id not in planner.unblock_attempts

    def test_skip_proposal_drops_dependency(self, task):
        plan = make_plan(task.id, {"id": "A", "dependencies": ["B"]}, {"id": "B", "dependencies": ["A"]})
        revised = Planner.apply_unblock_proposal(plan, {"stepChanges": [{"stepId": "B", "action": "skip"}]})
        assert revised.previous_plan_id == plan.id
        assert revised.get_step("A").dependencies == []
        assert [s.id for s in revised.runnable_steps()] == ["A"]
        assert plan.get_step("A").dependencies == ["B"]

    def test_modify_proposal_clears_unsatisfied_dependencies(self, task):
        plan = make_plan(task.id, {"id": "A", "dependencies": ["B"]}, {"id": "B", "dependencies": ["A"]})
        revised = Planner.apply_unblock_proposal(
            plan, {"stepChanges": [{"stepId": "B", "action": "modify", "details": "build it standalone"}]})
        step = revised.get_step("B")
        assert step.dependencies == []
        assert "build it standalone" in step.description

    def test_empty_or_unknown_proposal_changes_nothing(self, task):
        plan = make_plan(task.id, {"id": "A"})
        assert Planner.apply_unblock_proposal(plan, {}) is None
        assert Planner.apply_unblock_proposal(plan, {"stepChanges": [{"stepId": "Z", "action": "skip"}]}) is None


class TestRevision:
    @pytest.mark.asyncio
    async def test_echoed_steps_keep_status(self, backend, llm, agent_cfg, task):
        plan = make_plan(task.id, {"id": "s1"}, {"id": "s2", "dependencies": ["s1"]}, {"id": "s3"})
        _finish(plan, "s1")
        plan.mark_step("s3", p.StepStatus.IN_PROGRESS)
        plan.mark_step("s3", p.StepStatus.BLOCKED)
        backend.push(reply({
            "reason": "split the work",
            "steps": [
                {"id": "s1", "status": "pending"},
                {"id": "s2", "status": "completed", "description": "smaller"},
                {"id": "s4", "title": "new", "status": "completed"},
            ],
        }))
        revised = await Planner(llm, agent_cfg).revise_plan(plan, "s3 keeps failing")
        status = {s.id: s.status for s in revised.steps}
        assert status == {
            "s3": p.StepStatus.BLOCKED,
            "s1": p.StepStatus.COMPLETED,
            "s2": p.StepStatus.PENDING,
            "s4": p.StepStatus.PENDING,
        }
        assert revised.previous_plan_id == plan.id
        assert revised.revision_reason == "split the work"

    @pytest.mark.asyncio
    async def test_blocked_step_can_be_reopened(self, backend, llm, agent_cfg, task):
        plan = make_plan(task.id, {"id": "s1"})
        plan.mark_step("s1", p.StepStatus.IN_PROGRESS)
        plan.mark_step("s1", p.StepStatus.BLOCKED)
        backend.push(reply({"steps": [{"id": "s1", "status": "pending"}]}))
        revised = await Planner(llm, agent_cfg).revise_plan(plan, "retry with a smaller scope")
        assert revised.get_step("s1").status == p.StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_revision_cannot_move_live_steps(self, backend, llm, agent_cfg, task):
        plan = make_plan(task.id, {"id": "s1"}, {"id": "s2"})
        plan.mark_step("s1", p.StepStatus.IN_PROGRESS)
        backend.push(reply({"steps": [{"id": "s1", "status": "pending"}, {"id": "s2", "status": "blocked"}]}))
        revised = await Planner(llm, agent_cfg).revise_plan(plan, "shuffle")
        assert [(s.id, s.status) for s in revised.steps] == [
            ("s1", p.StepStatus.IN_PROGRESS),
            ("s2", p.StepStatus.PENDING),
        ]

    @pytest.mark.asyncio
    async def test_unusable_revision_appends_recovery_step(self, backend, llm, agent_cfg, task):
        plan = make_plan(task.id, {"id": "s1"}, {"id": "s2"})
        _finish(plan, "s1")
        backend.push("cannot help")
        revised = await Planner(llm, agent_cfg).revise_plan(plan, "broken")
        assert [s.id for s in revised.steps] == ["s1", "s2", "recovery-1"]
        assert revised.get_step("recovery-1").status == p.StepStatus.PENDING
        assert revised.get_step("s1").status == p.StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_revision_dropping_pending_work_is_rejected(self, backend, llm, agent_cfg, task):
        plan = make_plan(task.id, {"id": "s1"}, {"id": "s2"})
        _finish(plan, "s1")
        backend.push(reply({"steps": [{"id": "s1"}]}))
        revised = await Planner(llm, agent_cfg).revise_plan(plan, "trim")
        assert revised.get_step("recovery-1") is not None

    @pytest.mark.asyncio
    async def test_unavailable_service_uses_recovery(self, backend, agent_cfg, task, sleeper):
        service = CompletionService(backend, backend.config, sleep=sleeper)
        service.quota_exhausted = True
        plan = make_plan(task.id, {"id": "s1"})
        revised = await Planner(service, agent_cfg).revise_plan(plan, "anything")
        assert revised.steps[-1].id == "recovery-1"
        assert backend.calls == []


def test_plan_context_lists_steps(task):
    plan = make_plan(task.id, {"id": "s1", "title": "first"}, {"id": "s2", "title": "second", "dependencies": ["s1"]})
    text = plan_context(plan)
    assert "[pending] s1 (implementation): first (depends on: none)" in text
    assert "s2" in text and "depends on: s1" in text


class TestStepTransitions:
    def test_allowed_paths(self):
        done = p.Step(id="a", title="a")
        done.transition(p.StepStatus.IN_PROGRESS)
        done.transition(p.StepStatus.COMPLETED)
        assert done.status == p.StepStatus.COMPLETED

        failed = p.Step(id="b", title="b")
        failed.transition(p.StepStatus.IN_PROGRESS)
        failed.transition(p.StepStatus.BLOCKED)
        assert failed.status == p.StepStatus.BLOCKED

    @pytest.mark.parametrize("start, target", [
        (p.StepStatus.PENDING, p.StepStatus.COMPLETED),
        (p.StepStatus.PENDING, p.StepStatus.BLOCKED),
        (p.StepStatus.COMPLETED, p.StepStatus.PENDING),
        (p.StepStatus.COMPLETED, p.StepStatus.IN_PROGRESS),
        (p.StepStatus.BLOCKED, p.StepStatus.COMPLETED),
        (p.StepStatus.IN_PROGRESS, p.StepStatus.PENDING),
    ])
    def test_other_changes_are_rejected(self, start, target):
        step = p.Step(id="a", title="a", status=start)
        with pytest.raises(InvalidTransitionError):
            step.transition(target)
        assert step.status == start

    def test_mark_unknown_step(self, task):
        plan = make_plan(task.id, {"id": "s1"})
        with pytest.raises(PlanError):
            plan.mark_step("ghost", p.StepStatus.IN_PROGRESS)
