from __future__ import annotations
from typing import Any, Dict, List, Optional

from ..core.config import AgentConfig, agent_config
from ..core.errors import CompletionError, PlanDeadlockError, PlanError
from ..core.llm import CompletionOptions, CompletionService
from ..core.logger import info, warn
from ..core.memory import MemoryStore
from ..utils.json_utils import dumps, is_extraction_failure, parse_structured
from .protocols import (
    Action, ArchitectureAction, Artifact, ArtifactType, BlockedStep, CodeAction, CompletionAction,
    DeploymentAction, PerceivedState, Plan, Reflection, ResearchAction, Step, StepStatus, StepType, Task,
    TestingAction, UnblockAction,
)

SYSTEM = (
    "You are the planning module of an autonomous software development agent. "
    "You break development tasks into concrete, dependency-ordered steps and answer with strict JSON only."
)

PLAN_TMPL = (
    "Create a comprehensive, detailed plan for the following software development task.\n\n"
    "Task: {description}\n\n"
    "Requirements: {requirements}\n\n"
    "Break the task into steps. Each step needs:\n"
    "- id: short unique id such as step-1\n"
    "- title\n"
    "- description: concrete enough for a code generator (files, languages, frameworks)\n"
    "- type: one of research, architecture, implementation, testing, deployment\n"
    "- dependencies: ids of steps that must finish first\n"
    "- estimatedComplexity: low, medium or high\n\n"
    'Answer with JSON only: {{"title": "...", "description": "...", "steps": [...]}}'
)

REVISE_TMPL = (
    "Revise the development plan below using the new insights.\n\n"
    "Current plan:\n{plan}\n\n"
    "Insights:\n{insights}\n\n"
    "Keep the ids of steps you keep, keep completed steps as they are, and give new steps new ids. "
    "You may set a blocked step back to pending if the insights say how to fix it.\n"
    'Answer with JSON only: {{"title": "...", "description": "...", "reason": "...", "steps": [...]}} '
    "where each step has id, title, description, type, dependencies, status and estimatedComplexity."
)

QUERIES_TMPL = (
    "Generate between 1 and 3 focused web search queries for this research step.\n\n"
    "Step: {title}\n{description}\n\n"
    "Project context: {context}\n\n"
    'Answer with JSON only: {{"queries": ["..."]}}'
)

_JSON = CompletionOptions(response_format="json", temperature=0.2)


def plan_context(plan: Plan) -> str:
    lines = [f"Plan: {plan.title}", plan.description]
    for step in plan.steps:
        deps = ", ".join(step.dependencies) or "none"
        lines.append(f"- [{step.status.value}] {step.id} ({step.type.value}): {step.title} (depends on: {deps})")
    return "\n".join(line for line in lines if line)


def describe_insights(insights: Any) -> str:
    if isinstance(insights, Reflection):
        parts = [f"Recommendation: {insights.recommendation}"]
        parts += [f"- {i}" for i in insights.insights]
        if insights.plan_revision_strategy:
            parts.append(f"Suggested strategy: {insights.plan_revision_strategy}")
        return "\n".join(parts)
    if isinstance(insights, str):
        return insights
    return dumps(insights, limit=4000)


class Planner:
    """
    Turns a task into a step graph and picks one action per cycle.

    Unblock attempts are counted per task. Attempts below ``unblock_threshold``
    ask for a structural fix; once the threshold is reached the blocked step
    with the fewest dependencies runs with its dependencies bypassed, unless
    ``force_progress`` is off, in which case ``PlanDeadlockError`` is raised.
    """

    def __init__(self, llm: CompletionService, config: AgentConfig | None = None):
        self.llm = llm
        self.config = config or agent_config
        self.unblock_attempts: Dict[str, int] = {}

    # -- initial plan ----------------------------------------------------

    async def create_initial_plan(self, task: Task) -> Plan:
        info(f"Creating initial plan for task {task.id}")
        data: Any = None
        if self.llm.available:
            prompt = PLAN_TMPL.format(description=task.description, requirements=task.requirements or "None given")
            try:
                data = parse_structured(await self.llm.complete(f"{SYSTEM}\n\n{prompt}", _JSON))
            except CompletionError as e:
                warn(f"Plan completion failed, falling back to a single-step plan: {e}")

        if isinstance(data, dict) and not is_extraction_failure(data):
            try:
                steps = Plan.normalize_steps(data.get("steps") or [])
                if steps:
                    for step in steps:
                        step.status = StepStatus.PENDING
                    plan = Plan(
                        task_id=task.id,
                        title=str(data.get("title") or f"Plan for: {task.description[:60]}"),
                        description=str(data.get("description") or task.description),
                        steps=steps,
                    )
                    info(f"Plan {plan.id} has {len(plan.steps)} steps")
                    return plan
            except PlanError as e:
                warn(f"Plan from completion is invalid: {e}")
        else:
            warn("Could not parse a plan from the completion, using a single-step plan")
        return self.fallback_plan(task)

    @staticmethod
    def fallback_plan(task: Task) -> Plan:
        return Plan(
            task_id=task.id,
            title=f"Plan for: {task.description[:60]}",
            description=task.description,
            steps=[Step(
                id="step-1",
                title="Implement the task",
                description=f"{task.description}\n\n{task.requirements}".strip(),
                type=StepType.IMPLEMENTATION,
            )],
        )

    # -- next action -----------------------------------------------------

    async def determine_next_action(self, state: PerceivedState, plan: Plan,
                                    memory: MemoryStore | None = None) -> Action:
        common = {"plan_id": plan.id, "task_id": plan.task_id}
        if not plan.pending_steps():
            return CompletionAction(description="All steps are finished", **common)

        runnable = plan.runnable_steps()
        if not runnable:
            return self._unblock(state, plan, memory)

        self.unblock_attempts.pop(plan.task_id, None)
        return await self.action_for_step(runnable[0], state, plan, memory)

    async def action_for_step(self, step: Step, state: PerceivedState, plan: Plan,
                              memory: MemoryStore | None = None) -> Action:
        common = {
            "plan_id": plan.id,
            "task_id": plan.task_id,
            "step_id": step.id,
            "description": step.description or step.title,
        }
        context = plan_context(plan)

        if step.type == StepType.RESEARCH:
            queries = await self._research_queries(step, plan)
            return ResearchAction(queries=queries, research_context={"plan": context, "step": step.title}, **common)
        if step.type == StepType.ARCHITECTURE:
            return ArchitectureAction(plan_context=context, project_structure=state.project_structure or {}, **common)
        if step.type == StepType.TESTING:
            return TestingAction(plan_context=context, components_to_test=self._code_artifacts(plan, memory),
                                 **common)
        if step.type == StepType.DEPLOYMENT:
            return DeploymentAction(plan_context=context, **common)
        return self._code_action(step, state, plan, memory, common, context)

    def _code_action(self, step: Step, state: PerceivedState, plan: Plan, memory: MemoryStore | None,
                     common: Dict[str, Any], context: str, bypass: bool = False) -> CodeAction:
        dep_ids = [] if bypass else list(step.dependencies)
        dependencies = [d for d in (plan.get_step(i) for i in dep_ids) if d is not None]
        artifacts: List[Artifact] = []
        if memory is not None and dep_ids:
            artifacts = memory.get_artifacts_for_steps(plan.task_id, dep_ids)
        return CodeAction(
            step=step.model_copy(update={"dependencies": dep_ids}) if bypass else step,
            plan_context=context,
            project_structure=state.project_structure or {},
            existing_code=list(state.relevant_code),
            dependencies=dependencies,
            dependency_artifacts=artifacts,
            **common,
        )

    @staticmethod
    def _code_artifacts(plan: Plan, memory: MemoryStore | None) -> List[Artifact]:
        if memory is None:
            return []
        return [a for a in memory.get_codebase(plan.task_id).values() if a.type == ArtifactType.CODE]

    async def _research_queries(self, step: Step, plan: Plan) -> List[str]:
        fallback = [step.description or step.title]
        if not self.llm.available:
            return fallback
        prompt = QUERIES_TMPL.format(title=step.title, description=step.description, context=plan.description)
        try:
            data = parse_structured(await self.llm.complete(prompt, _JSON))
        except CompletionError as e:
            warn(f"Query generation failed for step {step.id}: {e}")
            return fallback
        queries = data.get("queries") if isinstance(data, dict) else data if isinstance(data, list) else None
        queries = [q.strip() for q in queries or [] if isinstance(q, str) and q.strip()]
        return queries[:3] or fallback

    # -- unblocking ------------------------------------------------------

    def _unblock(self, state: PerceivedState, plan: Plan, memory: MemoryStore | None) -> Action:
        attempts = self.unblock_attempts.get(plan.task_id, 0)
        waiting = plan.pending_steps()

        if attempts >= self.config.unblock_threshold:
            if not self.config.force_progress:
                raise PlanDeadlockError(
                    f"Plan {plan.id} is still blocked after {attempts} unblock attempts "
                    f"and forced progress is disabled"
                )
            self.unblock_attempts[plan.task_id] = 0
            # fewest dependencies first; min() keeps insertion order on ties
            step = min(waiting, key=lambda s: len(s.dependencies))
            warn(f"Forcing progress on step {step.id} after {attempts} unblock attempts; dependencies bypassed")
            common = {
                "plan_id": plan.id, "task_id": plan.task_id, "step_id": step.id,
                "description": step.description or step.title, "force_progress": True,
            }
            return self._code_action(step, state, plan, memory, common, plan_context(plan), bypass=True)

        attempts += 1
        self.unblock_attempts[plan.task_id] = attempts
        blocked = [
            BlockedStep(step_id=s.id, title=s.title, description=s.description,
                        missing_dependencies=plan.missing_dependencies(s))
            for s in waiting
        ]
        info(f"No runnable steps in plan {plan.id}; unblock attempt {attempts}/{self.config.unblock_threshold}")
        return UnblockAction(
            plan_id=plan.id,
            task_id=plan.task_id,
            description=f"Resolve {len(blocked)} blocked steps",
            blocked_steps=blocked,
            unblock_attempt=attempts,
            plan_context=plan_context(plan),
        )

    def reset(self, task_id: str) -> None:
        self.unblock_attempts.pop(task_id, None)

    @staticmethod
    def apply_unblock_proposal(plan: Plan, proposal: Dict[str, Any]) -> Optional[Plan]:
        """
        Apply the stepChanges of an unblock_plan result:
        - skip: the step is removed from every other step's dependencies
        - modify / split / reorder: the step loses its unsatisfied dependencies
          and the proposed details are appended to its description
        Returns a new plan revision, or None when nothing changed.
        """
        changes = proposal.get("stepChanges") or proposal.get("step_changes") or []
        steps = [s.model_copy(deep=True) for s in plan.steps]
        by_id = {s.id: s for s in steps}
        applied: List[str] = []

        for change in changes:
            if not isinstance(change, dict):
                continue
            step_id = str(change.get("stepId") or change.get("step_id") or "")
            kind = str(change.get("action") or change.get("change") or "").lower()
            details = str(change.get("details") or change.get("description") or "").strip()
            target = by_id.get(step_id)
            if target is None:
                warn(f"Unblock proposal references unknown step {step_id!r}")
                continue

            if kind == "skip":
                touched = False
                for other in steps:
                    if step_id in other.dependencies:
                        other.dependencies = [d for d in other.dependencies if d != step_id]
                        touched = True
                if touched:
                    applied.append(f"skip {step_id}")
            elif kind in ("modify", "split", "reorder"):
                if target.status != StepStatus.PENDING:
                    continue
                unsatisfied = set(plan.missing_dependencies(plan.get_step(step_id)))
                if not unsatisfied and not details:
                    continue
                target.dependencies = [d for d in target.dependencies if d not in unsatisfied]
                if details:
                    target.description = f"{target.description}\n\n{kind.capitalize()}: {details}".strip()
                applied.append(f"{kind} {step_id}")
            else:
                warn(f"Unknown unblock change {kind!r} for step {step_id}")

        if not applied:
            return None
        reason = "Unblock: " + ", ".join(applied)
        info(reason)
        return plan.revision(steps, reason=reason)

    # -- revision --------------------------------------------------------

    async def revise_plan(self, plan: Plan, insights: Any) -> Plan:
        info(f"Revising plan {plan.id}")
        summary = describe_insights(insights)
        if not self.llm.available:
            return self._recovery_revision(plan, "completion service unavailable", summary)

        prompt = REVISE_TMPL.format(plan=dumps(plan.steps, limit=6000), insights=summary)
        try:
            data = parse_structured(await self.llm.complete(f"{SYSTEM}\n\n{prompt}", _JSON))
        except CompletionError as e:
            return self._recovery_revision(plan, str(e), summary)

        raw_steps = data.get("steps") if isinstance(data, dict) else None
        if not raw_steps or not isinstance(raw_steps, list):
            return self._recovery_revision(plan, "no usable steps in the revision", summary)

        try:
            steps = self._merge_steps(plan, raw_steps)
            return plan.revision(
                steps,
                title=str(data.get("title") or "") or None,
                description=str(data.get("description") or "") or None,
                reason=str(data.get("reason") or summary[:300]),
            )
        except PlanError as e:
            return self._recovery_revision(plan, str(e), summary)

    @staticmethod
    def _merge_steps(plan: Plan, raw_steps: List[Any]) -> List[Step]:
        merged: List[Dict[str, Any]] = []
        echoed: set[str] = set()
        for raw in raw_steps:
            if not isinstance(raw, dict):
                continue
            raw = dict(raw)
            old = plan.get_step(str(raw.get("id"))) if raw.get("id") is not None else None
            if old is not None and old.id not in echoed:
                echoed.add(old.id)
                # the only status change a revision may make is reopening a blocked step;
                # everything else moves through the loop's transitions
                if old.status == StepStatus.BLOCKED and raw.get("status") == StepStatus.PENDING.value:
                    raw["status"] = StepStatus.PENDING.value
                else:
                    raw["status"] = old.status.value
                for key in ("title", "description", "type"):
                    raw.setdefault(key, getattr(old, key))
            else:
                raw["status"] = StepStatus.PENDING.value
            merged.append(raw)

        carried = [
            s.model_dump() for s in plan.steps
            if s.id not in echoed and s.status in (StepStatus.COMPLETED, StepStatus.BLOCKED)
        ]
        steps = Plan.normalize_steps(carried + merged)
        if not any(s.status == StepStatus.PENDING for s in steps) and any(
                s.status == StepStatus.PENDING for s in plan.steps):
            raise PlanError("Revision dropped every pending step")
        return steps

    def _recovery_revision(self, plan: Plan, failure: str, summary: str) -> Plan:
        warn(f"Plan revision failed ({failure}); appending a recovery step")
        existing = {s.id for s in plan.steps}
        n = 1
        while f"recovery-{n}" in existing:
            n += 1
        recovery = Step(
            id=f"recovery-{n}",
            title="Recover from failed step",
            description=f"Recover from the last failure and continue the task. Failure: {failure}. {summary}"[:2000],
            type=StepType.IMPLEMENTATION,
        )
        return plan.revision(plan.steps + [recovery], reason=f"Recovery: {failure}")
