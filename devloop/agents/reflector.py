from __future__ import annotations
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from pydantic import ValidationError

from ..core.config import AgentConfig, agent_config
from ..core.errors import CompletionError
from ..core.llm import CompletionOptions, CompletionService
from ..core.logger import info, warn
from ..core.memory import MemoryStore
from ..utils.json_utils import dumps, is_extraction_failure, parse_structured
from .protocols import ActionResult, FinalReport, Plan, Reflection, Task

REFLECT_TMPL = (
    "You are reviewing the progress of an autonomous development agent.\n\n"
    "Plan:\n{plan}\n\n"
    "Latest action result:\n{result}\n\n"
    "Recent history (most recent first):\n{history}\n\n"
    "Decide whether the plan is still viable.\n"
    'Answer with JSON only: {{"needsPlanRevision": true|false, "needsResearch": true|false, '
    '"researchQueries": ["..."], "insights": ["..."], "recommendation": "...", '
    '"planRevisionStrategy": "...", "confidence": "high|medium|low"}}'
)

FINAL_TMPL = (
    "Write the final report for this development task.\n\n"
    "Task: {description}\nRequirements: {requirements}\nOutcome: {status}\n\n"
    "Plan:\n{plan}\n\n"
    "Artifacts:\n{artifacts}\n\n"
    'Answer with JSON only: {{"summary": "...", "keyAccomplishments": ["..."], '
    '"components": [{{"name": "...", "description": "..."}}], '
    '"challenges": [{{"challenge": "...", "solution": "..."}}], "codeQuality": "...", '
    '"futureImprovements": ["..."], "learnings": ["..."], "overallEvaluation": "..."}}'
)

HISTORY_DEPTH = 5

# a reply without any of these is not a reflection
_DECISION_KEYS = {"needsPlanRevision", "needs_plan_revision", "recommendation"}

_REPORT_KEYS = {
    "keyAccomplishments": "key_accomplishments",
    "codeQuality": "code_quality",
    "futureImprovements": "future_improvements",
    "overallEvaluation": "overall_evaluation",
}


def _as_records(value: Any, key: str) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        value = [value] if value else []
    return [v if isinstance(v, dict) else {key: str(v)} for v in value]


def _as_strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        value = [value] if value else []
    return [v if isinstance(v, str) else dumps(v) for v in value]


class Reflector:
    def __init__(self, llm: CompletionService, config: AgentConfig | None = None):
        self.llm = llm
        self.config = config or agent_config
        self.window: Deque[ActionResult] = deque(maxlen=self.config.reflection_window)
        self.actions_seen = 0

    async def reflect(self, plan: Plan, result: ActionResult, memory: MemoryStore) -> Reflection:
        self.window.append(result)
        self.actions_seen += 1

        if not self.llm.available:
            return self.heuristic(plan, result)
        if result.ok and self.actions_seen < self.config.reflection_threshold:
            return self.heuristic(plan, result)

        history = memory.get_recent_history(HISTORY_DEPTH, task_id=plan.task_id)
        prompt = REFLECT_TMPL.format(
            plan=dumps(plan.steps, limit=5000),
            result=dumps(result.model_dump(mode="json", exclude={"action", "stack"}), limit=3000),
            history=dumps([
                {"action": h.action.type.value, "description": h.action.description[:200],
                 "status": h.result.status.value if h.result else "pending",
                 "error": h.result.error if h.result else None}
                for h in history
            ]),
        )
        try:
            data = parse_structured(await self.llm.complete(prompt, CompletionOptions(response_format="json")))
        except CompletionError as e:
            warn(f"Reflection completion failed, using heuristic reflection: {e}")
            return self.heuristic(plan, result)
        if not isinstance(data, dict) or is_extraction_failure(data):
            warn("Could not parse the reflection, using heuristic reflection")
            return self.heuristic(plan, result)
        if not data.keys() & _DECISION_KEYS:
            warn("Reflection carries no decision, using heuristic reflection")
            return self.heuristic(plan, result)
        try:
            reflection = Reflection.model_validate({**data, "task_id": plan.task_id})
        except ValidationError as e:
            warn(f"Reflection has the wrong shape, using heuristic reflection: {e}")
            return self.heuristic(plan, result)
        info(f"Reflection: revise={reflection.needs_plan_revision} research={reflection.needs_research} "
             f"confidence={reflection.confidence}")
        return reflection

    def heuristic(self, plan: Plan, result: ActionResult) -> Reflection:
        """Cheap reflection: keep the plan after a success, revise it after a failure."""
        if result.ok:
            return Reflection(
                task_id=plan.task_id,
                insights=[f"{self._label(result)} succeeded"],
                recommendation="Continue with the current plan",
                confidence="high",
            )
        failures = sum(1 for r in self.window if not r.ok)
        return Reflection(
            task_id=plan.task_id,
            needs_plan_revision=True,
            insights=[f"{self._label(result)} failed: {result.error}",
                      f"{failures} of the last {len(self.window)} actions failed"],
            recommendation="Revise the plan to work around the failed step",
            plan_revision_strategy="Replace or split the failed step and remove dependencies on it",
            confidence="medium",
        )

    @staticmethod
    def _label(result: ActionResult) -> str:
        if result.action is None:
            return f"Action {result.action_id}"
        step = f" for step {result.action.step_id}" if result.action.step_id else ""
        return f"{result.action.type.value} action{step}"

    async def generate_final_report(self, task: Task, plan: Optional[Plan], memory: MemoryStore,
                                    status: str = "completed") -> FinalReport:
        completed = [s.title or s.id for s in plan.completed_steps()] if plan else []
        if self.llm.available:
            artifacts = memory.get_artifacts_for_task(task.id)
            prompt = FINAL_TMPL.format(
                description=task.description,
                requirements=task.requirements or "None given",
                status=status,
                plan=dumps(plan.steps, limit=5000) if plan else "No plan",
                artifacts="\n".join(f"- [{a.type.value}] {a.path or ''} {a.description[:120]}"
                                    for a in artifacts) or "None",
            )
            try:
                data = parse_structured(await self.llm.complete(prompt, CompletionOptions(response_format="json")))
            except CompletionError as e:
                return self._acknowledgement(task, completed, status, str(e))
            if isinstance(data, dict) and not is_extraction_failure(data):
                fields = {_REPORT_KEYS.get(k, k): v for k, v in data.items()}
                try:
                    return FinalReport(
                        task_id=task.id,
                        summary=str(fields.get("summary") or ""),
                        key_accomplishments=_as_strings(fields.get("key_accomplishments")),
                        components=_as_records(fields.get("components"), "name"),
                        challenges=_as_records(fields.get("challenges"), "challenge"),
                        code_quality=str(fields.get("code_quality") or ""),
                        future_improvements=_as_strings(fields.get("future_improvements")),
                        learnings=_as_strings(fields.get("learnings")),
                        overall_evaluation=str(fields.get("overall_evaluation") or ""),
                        status=status,
                    )
                except ValidationError as e:
                    return self._acknowledgement(task, completed, status, str(e))
            return self._acknowledgement(task, completed, status, "could not parse the final report")
        return self._acknowledgement(task, completed, status, "completion service unavailable")

    @staticmethod
    def _acknowledgement(task: Task, completed: List[str], status: str, reason: str) -> FinalReport:
        warn(f"Final report degraded to an acknowledgement: {reason}")
        return FinalReport(
            task_id=task.id,
            summary=f"Task {status}: {task.description}",
            key_accomplishments=completed,
            status=status,
            error=reason,
        )
