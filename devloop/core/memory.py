"""
Durable, queryable record of everything the agent loop produces.

Tasks and plans are mutable records keyed by id; actions, results and
reflections are append-only logs. Every store operation is mirrored to
``<memory_path>/<kind>/<id>.json`` when persistence is enabled; a failed
mirror is logged and never undoes the in-memory write.
"""
from __future__ import annotations
import json
import re
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..agents.protocols import (
    Action,
    ActionResult,
    Artifact,
    ArtifactType,
    FinalReport,
    HistoryEntry,
    Plan,
    PlanStatus,
    Reflection,
    Task,
    new_id,
    now,
)
from .config import MemoryConfig, memory_config
from .errors import MemoryStoreError, PersistenceError
from .logger import debug, error, warn

_SUBDIRS = ("tasks", "plans", "actions", "results", "reflections", "artifacts", "research", "codebase")
_RE_TOKEN = re.compile(r"[a-z0-9_]+")


class SemanticIndex(Protocol):
    def add(self, doc_id: str, text: str, metadata: Dict[str, Any]) -> None: ...

    def search(self, query: str, limit: int) -> List[Dict[str, Any]]: ...

    def remove_where(self, key: str, value: Any) -> None: ...


class KeywordIndex:
    """Token-overlap ranking; stands in wherever no embedding index is configured."""

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _tokens(text: str) -> Counter:
        return Counter(t for t in _RE_TOKEN.findall(text.lower()) if len(t) > 2)

    def add(self, doc_id: str, text: str, metadata: Dict[str, Any]) -> None:
        self._docs[doc_id] = {"id": doc_id, "text": text, "metadata": metadata, "tokens": self._tokens(text)}

    def search(self, query: str, limit: int) -> List[Dict[str, Any]]:
        wanted = self._tokens(query)
        scored = []
        for doc in self._docs.values():
            score = sum(min(count, doc["tokens"][tok]) for tok, count in wanted.items())
            if score:
                scored.append((score, doc))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [{"id": d["id"], "text": d["text"][:500], "metadata": d["metadata"], "score": s}
                for s, d in scored[:limit]]

    def remove_where(self, key: str, value: Any) -> None:
        self._docs = {k: d for k, d in self._docs.items() if d["metadata"].get(key) != value}


class StoredAction(BaseModel):
    action: Action
    task_id: Optional[str] = None
    result_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=now)


class MemoryStore:
    def __init__(self, config: MemoryConfig | None = None, index: SemanticIndex | None = None):
        self.config = config or memory_config
        self._lock = threading.RLock()
        self.tasks: Dict[str, Task] = {}
        self.plans: Dict[str, Plan] = {}
        self.actions: List[StoredAction] = []
        self.results: Dict[str, ActionResult] = {}
        self.reflections: List[Reflection] = []
        self.final_reports: Dict[str, FinalReport] = {}
        self.artifacts: Dict[str, Artifact] = {}
        self.codebase: Dict[str, Artifact] = {}
        self.research: Dict[str, Dict[str, Any]] = {}
        if index is None and self.config.semantic_index:
            index = KeywordIndex()
        self.index = index
        self.root = Path(self.config.memory_path).resolve()
        if self.config.persist_to_disk:
            self._init_persistence()

    # -- persistence ---------------------------------------------------

    def _init_persistence(self) -> None:
        try:
            for sub in _SUBDIRS:
                (self.root / sub).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            error(f"Failed to initialize memory persistence at {self.root}: {e}")
            raise PersistenceError(f"Memory initialization failed: {e}") from e

    def _persist(self, kind: str, entity_id: str, payload: BaseModel | Dict[str, Any]) -> None:
        if not self.config.persist_to_disk:
            return
        target = self.root / kind / f"{_safe_name(entity_id)}.json"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(payload, BaseModel):
                text = payload.model_dump_json(indent=2)
            else:
                text = json.dumps(payload, indent=2, ensure_ascii=False, default=str)
            target.write_text(text, encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            warn(f"Persisting {kind}/{entity_id} failed: {e}")

    def _persist_code(self, artifact: Artifact) -> None:
        if not self.config.persist_to_disk or not artifact.path or artifact.content is None:
            return
        codebase = (self.root / "codebase").resolve()
        target = (codebase / artifact.path.lstrip("/\\")).resolve()
        if not target.is_relative_to(codebase):
            warn(f"Refusing to mirror artifact outside the codebase dir: {artifact.path}")
            return
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(artifact.content, encoding="utf-8")
        except OSError as e:
            warn(f"Persisting codebase/{artifact.path} failed: {e}")

    def _index(self, doc_id: str, text: str, **metadata: Any) -> None:
        if self.index is None:
            return
        try:
            self.index.add(doc_id, text, metadata)
        except Exception as e:
            warn(f"Semantic index update failed for {doc_id}: {e}")

    # -- tasks ---------------------------------------------------------

    def add_task(self, task: Task) -> str:
        with self._lock:
            self.tasks[task.id] = task
            self._index(f"task-{task.id}", f"Task: {task.description}", type="task", task_id=task.id)
            self._persist("tasks", task.id, task)
            return task.id

    def update_task(self, task: Task) -> Task:
        with self._lock:
            if task.id not in self.tasks:
                raise MemoryStoreError(f"Task {task.id} not found in memory")
            task.updated_at = now()
            self.tasks[task.id] = task
            self._persist("tasks", task.id, task)
            return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self.tasks.get(task_id)

    # -- plans ---------------------------------------------------------

    def store_plan(self, plan: Plan) -> str:
        """Store a plan; an active plan supersedes every other active plan of its task."""
        with self._lock:
            if plan.status == PlanStatus.ACTIVE:
                for other in self.plans.values():
                    if other.task_id == plan.task_id and other.id != plan.id and other.status == PlanStatus.ACTIVE:
                        other.status = PlanStatus.SUPERSEDED
                        other.updated_at = now()
                        self._persist("plans", other.id, other)
            self.plans[plan.id] = plan
            self._index(f"plan-{plan.id}", f"Plan: {plan.title}\n{plan.description}",
                        type="plan", plan_id=plan.id, task_id=plan.task_id)
            self._persist("plans", plan.id, plan)
            return plan.id

    def update_plan(self, plan: Plan) -> Plan:
        with self._lock:
            if plan.id not in self.plans:
                raise MemoryStoreError(f"Plan {plan.id} not found in memory")
            plan.updated_at = now()
            self.plans[plan.id] = plan
            self._persist("plans", plan.id, plan)
            return plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._lock:
            return self.plans.get(plan_id)

    def get_latest_plan_for_task(self, task_id: str) -> Optional[Plan]:
        with self._lock:
            plans = [p for p in self.plans.values() if p.task_id == task_id]
            if not plans:
                return None
            active = [p for p in plans if p.status == PlanStatus.ACTIVE]
            return max(active or plans, key=lambda p: p.created_at)

    def get_active_plans(self, task_id: str) -> List[Plan]:
        with self._lock:
            return [p for p in self.plans.values() if p.task_id == task_id and p.status == PlanStatus.ACTIVE]

    def get_plan_history(self, plan_id: str) -> List[Plan]:
        """The revision chain ending at ``plan_id``, newest first."""
        with self._lock:
            chain: List[Plan] = []
            seen: set[str] = set()
            current = self.plans.get(plan_id)
            while current is not None and current.id not in seen:
                chain.append(current)
                seen.add(current.id)
                current = self.plans.get(current.previous_plan_id) if current.previous_plan_id else None
            return chain

    # -- actions / results ---------------------------------------------

    def store_action(self, action: Action) -> str:
        """Log an action before it runs; its history entry has no result until store_result."""
        with self._lock:
            if any(entry.action.id == action.id for entry in self.actions):
                return action.id
            entry = StoredAction(action=action, task_id=action.task_id)
            self.actions.append(entry)
            self._persist("actions", action.id, entry)
            return action.id

    def store_result(self, action: Action, result: ActionResult) -> str:
        with self._lock:
            self.store_action(action)
            if result.id in self.results:
                raise MemoryStoreError(f"Result {result.id} is already recorded")
            result = result.model_copy(update={"action_id": action.id})
            self.results[result.id] = result
            for entry in self.actions:
                if entry.action.id == action.id:
                    entry.result_id = result.id
                    self._persist("actions", action.id, entry)
                    break
            self._index(f"action-{action.id}", f"Action: {action.type.value} {action.description}",
                        type="action", action_id=action.id, task_id=action.task_id)
            self._index(f"result-{result.id}", f"Result: {result.status.value} {result.error or ''}",
                        type="result", result_id=result.id, action_id=action.id, task_id=action.task_id)
            self._persist("results", result.id, result)
            return result.id

    def get_result(self, result_id: str) -> Optional[ActionResult]:
        with self._lock:
            return self.results.get(result_id)

    def get_recent_history(self, limit: int | None = 10, task_id: str | None = None) -> List[HistoryEntry]:
        """Last ``limit`` actions (all of them for None) with their result, most recent first."""
        with self._lock:
            entries = [e for e in self.actions if task_id is None or e.task_id == task_id]
            if limit is None:
                recent = entries
            else:
                recent = entries[-limit:] if limit > 0 else []
            return [
                HistoryEntry(action=e.action, result=self.results.get(e.result_id) if e.result_id else None)
                for e in reversed(recent)
            ]

    # -- reflections ---------------------------------------------------

    def store_reflection(self, reflection: Reflection) -> str:
        with self._lock:
            if not reflection.id:
                reflection.id = new_id("reflection")
            self.reflections.append(reflection)
            self._index(f"reflection-{reflection.id}",
                        f"Reflection: {reflection.recommendation}\n" + "\n".join(reflection.insights),
                        type="reflection", reflection_id=reflection.id, task_id=reflection.task_id)
            self._persist("reflections", reflection.id, reflection)
            return reflection.id

    def store_final_reflection(self, task_id: str, report: FinalReport) -> str:
        with self._lock:
            reflection = Reflection(
                id=f"final-reflection-{task_id}",
                task_id=task_id,
                is_final=True,
                insights=list(report.key_accomplishments),
                recommendation=report.summary,
                confidence="high" if report.error is None else "low",
            )
            self.reflections.append(reflection)
            self.final_reports[task_id] = report
            self._index(f"final-{task_id}", f"Final report: {report.summary}", type="final_reflection",
                        task_id=task_id)
            self._persist("reflections", reflection.id, {"reflection": reflection.model_dump(mode="json"),
                                                         "report": report.model_dump(mode="json")})
            return reflection.id

    def get_reflections(self, task_id: str | None = None) -> List[Reflection]:
        with self._lock:
            return [r for r in self.reflections if task_id is None or r.task_id == task_id]

    def get_final_report(self, task_id: str) -> Optional[FinalReport]:
        with self._lock:
            return self.final_reports.get(task_id)

    # -- artifacts / research ------------------------------------------

    def store_artifact(self, artifact: Artifact) -> str:
        with self._lock:
            self.artifacts[artifact.id] = artifact
            if artifact.type in (ArtifactType.CODE, ArtifactType.TEST) and artifact.path:
                self.codebase[artifact.path] = artifact
                self._persist_code(artifact)
            self._index(f"artifact-{artifact.id}",
                        f"Artifact: {artifact.path or ''} {artifact.description}\n{(artifact.content or '')[:2000]}",
                        type="artifact", artifact_id=artifact.id, artifact_type=artifact.type.value,
                        task_id=artifact.task_id)
            self._persist("artifacts", artifact.id, artifact)
            return artifact.id

    def get_artifacts_for_task(self, task_id: str) -> List[Artifact]:
        with self._lock:
            return [a for a in self.artifacts.values() if a.task_id == task_id]

    def get_artifacts_for_steps(self, task_id: str, step_ids: List[str]) -> List[Artifact]:
        with self._lock:
            wanted = set(step_ids)
            return [a for a in self.artifacts.values() if a.task_id == task_id and a.step_id in wanted]

    def get_codebase(self, task_id: str | None = None) -> Dict[str, Artifact]:
        with self._lock:
            return {p: a for p, a in self.codebase.items() if task_id is None or a.task_id == task_id}

    def get_code(self, path: str) -> Optional[Artifact]:
        with self._lock:
            return self.codebase.get(path)

    def store_research_results(self, research: Dict[str, Any]) -> str:
        with self._lock:
            research = dict(research)
            research.setdefault("id", new_id("research"))
            research.setdefault("timestamp", now().isoformat())
            self.research[research["id"]] = research
            self._index(f"research-{research['id']}", f"Research: {research.get('synthesis') or research}",
                        type="research", research_id=research["id"], task_id=research.get("task_id"))
            self._persist("research", research["id"], research)
            return research["id"]

    def get_research(self, task_id: str | None = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [r for r in self.research.values() if task_id is None or r.get("task_id") == task_id]

    # -- search / housekeeping -----------------------------------------

    def semantic_search(self, query: str, limit: int = 5) -> List[Dict[str, Any]]:
        if self.index is None:
            raise MemoryStoreError("Semantic index is not enabled or configured")
        with self._lock:
            return self.index.search(query, limit)

    def purge_task(self, task_id: str) -> None:
        """Drop a task's in-memory records; persisted files stay on disk."""
        with self._lock:
            self.tasks.pop(task_id, None)
            self.plans = {k: p for k, p in self.plans.items() if p.task_id != task_id}
            dropped = {e.result_id for e in self.actions if e.task_id == task_id and e.result_id}
            self.actions = [e for e in self.actions if e.task_id != task_id]
            self.results = {k: r for k, r in self.results.items() if k not in dropped}
            self.reflections = [r for r in self.reflections if r.task_id != task_id]
            self.final_reports.pop(task_id, None)
            self.artifacts = {k: a for k, a in self.artifacts.items() if a.task_id != task_id}
            self.codebase = {k: a for k, a in self.codebase.items() if a.task_id != task_id}
            self.research = {k: r for k, r in self.research.items() if r.get("task_id") != task_id}
            if self.index is not None:
                self.index.remove_where("task_id", task_id)
            debug(f"Purged memory for task {task_id}")


def _safe_name(entity_id: str) -> str:
    return re.sub(r"[^\w.-]", "_", entity_id)
