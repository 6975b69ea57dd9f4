from __future__ import annotations
import asyncio
import inspect
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .agents.executor import ExecutionContext, Executor
from .agents.perception import Perception, current_step_of
from .agents.planner import Planner
from .agents.protocols import (
    Action, ActionResult, ActionType, CompletionAction, HistoryEntry, Plan, PlanStatus,
    ResearchAction, StepStatus, Task, TaskStatus, TaskStatusReport, now,
)
from .agents.reflector import Reflector
from .core.config import AgentConfig, agent_config
from .core.errors import PlanDeadlockError, TaskAlreadyRunningError
from .core.llm import CompletionService, create_completion_service
from .core.logger import Step, error, info, success, warn
from .core.memory import MemoryStore


class LifecycleEvent(str, Enum):
    TASK_STARTED = "taskStarted"
    PLAN_CREATED = "planCreated"
    ACTION_SELECTED = "actionSelected"
    ACTION_EXECUTED = "actionExecuted"
    ACTION_FAILED = "actionFailed"
    PLAN_REVISED = "planRevised"
    REFLECTION_COMPLETE = "reflectionComplete"
    TASK_COMPLETED = "taskCompleted"
    TASK_FAILED = "taskFailed"
    TASK_STOPPED = "taskStopped"


Listener = Callable[[LifecycleEvent, Dict[str, Any]], Any]
Emit = Callable[[LifecycleEvent, Dict[str, Any]], None]
CollaboratorFactory = Callable[[str], Dict[str, Any]]

ITERATION_LIMIT_REASON = "iteration limit reached"


class AgentRun:
    """
    One task's perceive -> plan -> act -> reflect loop.

    Exactly one cycle is in flight at a time. ``stop()`` only flips a flag:
    the loop notices it at the top of the next cycle, and a result that
    arrives after the flag was set is discarded.
    """

    def __init__(self, task: Task, *, memory: MemoryStore, planner: Planner, executor: Executor,
                 perception: Perception, reflector: Reflector, context: ExecutionContext,
                 config: AgentConfig | None = None, emit: Emit | None = None, owns_collaborators: bool = False):
        self.task = task
        self.memory = memory
        self.planner = planner
        self.executor = executor
        self.perception = perception
        self.reflector = reflector
        self.context = context
        self.config = config or agent_config
        self._emit = emit or (lambda event, payload: None)
        self.owns_collaborators = owns_collaborators

        self.plan: Optional[Plan] = None
        self.iteration = 0
        self.consecutive_failures = 0
        self.running = False
        self.stopped = False
        self.finished = False
        self.last_activity: datetime = now()
        self.pending_unblock: Optional[Dict[str, Any]] = None

    # -- public ----------------------------------------------------------

    def stop(self) -> List[HistoryEntry]:
        if not self.finished:
            info(f"Stop requested for task {self.task.id}")
            self.stopped = True
        return self.history()

    def history(self) -> List[HistoryEntry]:
        return self.memory.get_recent_history(None, task_id=self.task.id)

    def status(self) -> TaskStatusReport:
        step = current_step_of(self.plan) if self.plan else None
        return TaskStatusReport(
            task_id=self.task.id,
            status=self.task.status,
            progress=self.plan.progress() if self.plan else 0.0,
            current_step=step.id if step else None,
            last_activity=self.last_activity,
            iteration=self.iteration,
            running=self.running,
            last_error=self.task.last_error,
        )

    def release(self) -> None:
        """Close collaborators created for this run."""
        if not self.owns_collaborators:
            return
        for collaborator in (self.context.browser, self.context.file_system, self.context.computer):
            close = getattr(collaborator, "close", None)
            if callable(close):
                close()

    async def run(self) -> Task:
        self.running = True
        self._touch()
        self.task.status = TaskStatus.ACTIVE
        self.memory.update_task(self.task)
        step = Step(f"Task {self.task.id}: {self.task.description[:80]}")
        self.emit(LifecycleEvent.TASK_STARTED, description=self.task.description)
        try:
            self.plan = await self.planner.create_initial_plan(self.task)
            self.memory.store_plan(self.plan)
            self.emit(LifecycleEvent.PLAN_CREATED, plan_id=self.plan.id, steps=len(self.plan.steps))

            while not self.finished:
                if self.stopped:
                    self._stopped()
                    break
                if self.iteration >= self.config.max_iterations:
                    await self._fail(ITERATION_LIMIT_REASON)
                    break
                self.iteration += 1
                self._touch()
                try:
                    await self._cycle()
                except PlanDeadlockError as e:
                    await self._fail(str(e))
                    break
                except Exception as e:
                    error(f"Cycle {self.iteration} of task {self.task.id} crashed: {e}")
                    self._count_failure(str(e) or type(e).__name__)
                if not self.finished and self.consecutive_failures >= self.config.max_consecutive_failures:
                    await self._fail(self.task.last_error or "too many consecutive failures")
        finally:
            self.running = False
            self._touch()
        step.done(self.task.status.value)
        return self.task

    def emit(self, event: LifecycleEvent, **payload: Any) -> None:
        self._emit(event, {"task_id": self.task.id, "iteration": self.iteration, **payload})

    # -- one cycle -------------------------------------------------------

    async def _cycle(self) -> None:
        if self.pending_unblock is not None:
            proposal, self.pending_unblock = self.pending_unblock, None
            revised = self.planner.apply_unblock_proposal(self.plan, proposal)
            if revised is not None:
                self._adopt(revised)

        # nothing left to run but failed steps remain: never report that as completed
        if not self.plan.pending_steps() and self.plan.blocked_steps():
            await self._revise_stalled()
            return

        state = await self.perception.perceive(self.memory, self.plan)
        action = await self.planner.determine_next_action(state, self.plan, self.memory)
        self.emit(LifecycleEvent.ACTION_SELECTED, action_id=action.id, action_type=action.type.value,
                  step_id=action.step_id, force_progress=action.force_progress)

        if isinstance(action, CompletionAction):
            await self._complete()
            return

        step = self.plan.get_step(action.step_id)
        if step is not None:
            self.plan.mark_step(step.id, StepStatus.IN_PROGRESS)
            self.memory.update_plan(self.plan)

        result = await self._execute(action)
        if result is None:
            return

        if result.ok:
            self.consecutive_failures = 0
            if step is not None:
                self.plan.mark_step(step.id, StepStatus.COMPLETED)
            if action.type == ActionType.UNBLOCK_PLAN:
                self.pending_unblock = result.payload or {}
            self.emit(LifecycleEvent.ACTION_EXECUTED, action_id=action.id, result_id=result.id,
                      artifacts=len(result.artifacts))
        else:
            if step is not None:
                self.plan.mark_step(step.id, StepStatus.BLOCKED)
            self._count_failure(result.error or "action failed")
            self.emit(LifecycleEvent.ACTION_FAILED, action_id=action.id, result_id=result.id,
                      error=result.error, error_kind=result.error_kind)
        self.memory.update_plan(self.plan)

        reflection = await self.reflector.reflect(self.plan, result, self.memory)
        self.memory.store_reflection(reflection)
        self.emit(LifecycleEvent.REFLECTION_COMPLETE, reflection_id=reflection.id,
                  needs_plan_revision=reflection.needs_plan_revision, needs_research=reflection.needs_research)
        if self.stopped:
            return

        insights: Any = reflection
        researched = False
        if reflection.needs_research and reflection.research_queries:
            research = await self._execute(ResearchAction(
                task_id=self.task.id,
                plan_id=self.plan.id,
                description=f"Research for: {reflection.recommendation or self.task.description}"[:500],
                queries=reflection.research_queries[:3],
            ))
            if research is not None and research.ok:
                researched = True
                insights = {
                    "reflection": reflection.model_dump(mode="json", include={"insights", "recommendation",
                                                                              "plan_revision_strategy"}),
                    "research": (research.payload or {}).get("synthesis"),
                }

        if (reflection.needs_plan_revision or researched) and not self.stopped:
            self._adopt(await self.planner.revise_plan(self.plan, insights))

    async def _execute(self, action: Action) -> Optional[ActionResult]:
        self.memory.store_action(action)
        result = await self.executor.execute(action, self.context)
        self._touch()
        if self.stopped:
            warn(f"Task {self.task.id} was stopped; discarding the result of action {action.id}")
            return None
        self.memory.store_result(action, result)
        for artifact in result.artifacts:
            self.memory.store_artifact(artifact)
        return result

    # -- bookkeeping -----------------------------------------------------

    def _touch(self) -> None:
        self.last_activity = now()

    def _count_failure(self, message: str) -> None:
        self.consecutive_failures += 1
        self.task.last_error = message
        self.memory.update_task(self.task)
        warn(f"Task {self.task.id}: failure {self.consecutive_failures}/{self.config.max_consecutive_failures}: "
             f"{message}")

    def _adopt(self, plan: Plan) -> None:
        previous = self.plan
        self.plan = plan
        self.memory.store_plan(plan)
        self.emit(LifecycleEvent.PLAN_REVISED, plan_id=plan.id,
                  previous_plan_id=previous.id if previous else None, reason=plan.revision_reason)

    async def _revise_stalled(self) -> None:
        blocked = ", ".join(s.id for s in self.plan.blocked_steps())
        self._count_failure(f"no pending steps left, blocked: {blocked}")
        if self.consecutive_failures >= self.config.max_consecutive_failures:
            return
        insights = (f"Every remaining step is blocked ({blocked}). "
                    f"Reopen the blocked steps that can be fixed or replace them with new steps.")
        self._adopt(await self.planner.revise_plan(self.plan, insights))

    async def _complete(self) -> None:
        self.plan.status = PlanStatus.COMPLETED
        self.memory.update_plan(self.plan)
        report = await self.reflector.generate_final_report(self.task, self.plan, self.memory)
        self.memory.store_final_reflection(self.task.id, report)
        self.task.status = TaskStatus.COMPLETED
        self.memory.update_task(self.task)
        self.finished = True
        success(f"Task {self.task.id} completed after {self.iteration} cycles")
        self.emit(LifecycleEvent.TASK_COMPLETED, plan_id=self.plan.id, summary=report.summary)

    async def _fail(self, reason: str) -> None:
        error(f"Task {self.task.id} failed: {reason}")
        if self.plan is not None:
            self.plan.status = PlanStatus.FAILED
            self.memory.update_plan(self.plan)
        self.task.status = TaskStatus.FAILED
        self.task.last_error = reason
        self.memory.update_task(self.task)
        report = await self.reflector.generate_final_report(self.task, self.plan, self.memory, status="failed")
        if report.error is None:
            report.error = reason
        self.memory.store_final_reflection(self.task.id, report)
        self.finished = True
        self.emit(LifecycleEvent.TASK_FAILED, error=reason)

    def _stopped(self) -> None:
        self.task.status = TaskStatus.FAILED
        self.task.last_error = "stopped"
        self.memory.update_task(self.task)
        self.finished = True
        info(f"Task {self.task.id} stopped after {self.iteration} cycles")
        self.emit(LifecycleEvent.TASK_STOPPED, history=len(self.history()))


class Orchestrator:
    """
    Owns every run of one process: task registry, status, stop, lifecycle
    events and the idle sweep. Caches (research results, unblock counters)
    live on the instance and go away with it.
    """

    def __init__(self, llm: CompletionService | None = None, memory: MemoryStore | None = None, *,
                 file_system=None, browser=None, computer=None,
                 collaborator_factory: CollaboratorFactory | None = None,
                 executor: Executor | None = None, config: AgentConfig | None = None):
        self.llm = llm or create_completion_service()
        self.memory = memory or MemoryStore()
        self.config = config or agent_config
        self.executor = executor or Executor()
        self.planner = Planner(self.llm, self.config)
        self.collaborators = {"file_system": file_system, "browser": browser, "computer": computer}
        self.collaborator_factory = collaborator_factory
        self.research_cache: Dict[str, Any] = {}
        self.runs: Dict[str, AgentRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._listeners: List[Listener] = []
        self._sweeper: Optional[asyncio.Task] = None

    # -- events ----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def emit(self, event: LifecycleEvent, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event, payload)
                if inspect.isawaitable(outcome):
                    asyncio.ensure_future(outcome)
            except Exception as e:
                error(f"Listener {getattr(listener, '__name__', listener)!r} failed on {event.value}: {e}")

    # -- runs ------------------------------------------------------------

    def create_run(self, description: str, requirements: str = "", task_id: str | None = None) -> AgentRun:
        if task_id is not None and task_id in self.runs and not self.runs[task_id].finished:
            raise TaskAlreadyRunningError(f"Task {task_id} is already running")
        task = Task(description=description, requirements=requirements, **({"id": task_id} if task_id else {}))
        self.memory.add_task(task)

        collaborators = dict(self.collaborators)
        owns = False
        if self.collaborator_factory is not None:
            collaborators.update(self.collaborator_factory(task.id))
            owns = True
        context = ExecutionContext(
            llm=self.llm,
            memory=self.memory,
            task_id=task.id,
            file_system=collaborators.get("file_system"),
            browser=collaborators.get("browser"),
            computer=collaborators.get("computer"),
            config=self.config,
            research_cache=self.research_cache,
        )
        run = AgentRun(
            task,
            memory=self.memory,
            planner=self.planner,
            executor=self.executor,
            perception=Perception(context.file_system, context.computer, self.config),
            reflector=Reflector(self.llm, self.config),
            context=context,
            config=self.config,
            emit=self.emit,
            owns_collaborators=owns,
        )
        self.runs[task.id] = run
        return run

    async def submit_task(self, description: str, requirements: str = "", task_id: str | None = None) -> str:
        run = self.create_run(description, requirements, task_id)
        self._tasks[run.task.id] = asyncio.create_task(run.run(), name=f"devloop-{run.task.id}")
        info(f"Submitted task {run.task.id}")
        return run.task.id

    async def run_task(self, description: str, requirements: str = "") -> Task:
        task_id = await self.submit_task(description, requirements)
        return await self.wait(task_id)

    async def wait(self, task_id: str) -> Task:
        job = self._tasks.get(task_id)
        if job is None:
            raise KeyError(f"Unknown task {task_id}")
        return await job

    def get_status(self, task_id: str) -> Optional[TaskStatusReport]:
        run = self.runs.get(task_id)
        if run is not None:
            return run.status()
        task = self.memory.get_task(task_id)
        if task is None:
            return None
        plan = self.memory.get_latest_plan_for_task(task_id)
        return TaskStatusReport(task_id=task.id, status=task.status, progress=plan.progress() if plan else 0.0,
                                last_activity=task.updated_at, last_error=task.last_error)

    def stop_task(self, task_id: str) -> List[HistoryEntry]:
        run = self.runs.get(task_id)
        if run is None:
            raise KeyError(f"Unknown task {task_id}")
        return run.stop()

    # -- housekeeping ----------------------------------------------------

    def sweep_idle(self, at: datetime | None = None) -> List[str]:
        """Purge finished runs idle for longer than idle_timeout; returns the purged task ids."""
        cutoff = (at or now()) - timedelta(seconds=self.config.idle_timeout)
        purged = []
        for task_id, run in list(self.runs.items()):
            if run.running or run.last_activity > cutoff:
                continue
            run.release()
            self.memory.purge_task(task_id)
            self.planner.reset(task_id)
            self.runs.pop(task_id, None)
            self._tasks.pop(task_id, None)
            purged.append(task_id)
        if purged:
            info(f"Idle sweep purged {len(purged)} tasks")
        return purged

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            self.sweep_idle()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="devloop-idle-sweep")

    async def dispose(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for run in self.runs.values():
            run.stop()
        jobs = [job for job in self._tasks.values() if not job.done()]
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        for run in self.runs.values():
            run.release()
