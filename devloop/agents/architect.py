from __future__ import annotations
from typing import TYPE_CHECKING, Any, Dict

from ..core.llm import CompletionOptions
from ..core.logger import info, warn
from ..utils.json_utils import dumps, is_extraction_failure, parse_structured, raw_text
from .protocols import ArchitectureAction, Artifact, ArtifactType, DeploymentAction, UnblockAction

if TYPE_CHECKING:
    from .executor import ExecutionContext

SYSTEM = (
    "You are the software architect of an autonomous development agent. "
    "You answer with strict JSON only."
)

ARCHITECTURE_TMPL = (
    "Design the architecture for this step of the project.\n\n"
    "Step: {description}\n\n"
    "Plan:\n{plan}\n\n"
    "Current project files:\n{structure}\n\n"
    'Answer with JSON only: {{"overview": "...", "components": [{{"name": "...", "responsibility": "...", '
    '"interfaces": ["..."]}}], "dataFlow": "...", "technologies": ["..."], "fileStructure": ["..."], '
    '"designDecisions": ["..."]}}'
)

DEPLOYMENT_TMPL = (
    "Prepare a deployment for this project.\n\n"
    "Step: {description}\n\n"
    "Target environment: {environment}\n\n"
    "Plan:\n{plan}\n\n"
    'Answer with JSON only: {{"deploymentStrategy": "...", "steps": ["..."], "configuration": {{}}, '
    '"environmentVariables": ["..."], "monitoring": "..."}}'
)

UNBLOCK_TMPL = (
    "The plan below is stuck: no pending step has all of its dependencies completed.\n\n"
    "Plan:\n{plan}\n\n"
    "Blocked steps and their missing dependencies:\n{blocked}\n\n"
    "This is unblock attempt {attempt}. Analyse why the steps are blocked and propose changes. "
    "For each change use action skip (drop the step from the dependencies of other steps), "
    "modify (rewrite the step so it no longer needs its missing dependencies), split or reorder.\n"
    'Answer with JSON only: {{"analysis": "...", "rootCause": "...", "solution": "...", '
    '"stepChanges": [{{"stepId": "...", "action": "skip|modify|split|reorder", "details": "..."}}]}}'
)

_JSON = CompletionOptions(response_format="json", temperature=0.3)


async def _structured(prompt: str, context: "ExecutionContext", fallback_key: str) -> Dict[str, Any]:
    completion = await context.llm.complete(f"{SYSTEM}\n\n{prompt}", _JSON)
    data = parse_structured(completion)
    if isinstance(data, dict) and not is_extraction_failure(data):
        return data
    warn(f"Could not extract a structured answer, keeping the raw text under {fallback_key!r}")
    text = raw_text(completion)
    return {fallback_key: text[:2000], "rawResponse": text, "extractionFailed": True}


def _document(action: Any, context: "ExecutionContext", title: str, data: Dict[str, Any]) -> Artifact:
    return Artifact(
        type=ArtifactType.DOCUMENT,
        content=dumps(data),
        description=f"{title}: {action.description[:120]}",
        task_id=action.task_id or context.task_id,
        step_id=action.step_id,
    )


async def handle_architecture(action: ArchitectureAction, context: "ExecutionContext") -> Dict[str, Any]:
    prompt = ARCHITECTURE_TMPL.format(
        description=action.description,
        plan=action.plan_context or "None",
        structure=dumps((action.project_structure or {}).get("files", []), limit=3000),
    )
    data = await _structured(prompt, context, "overview")
    info(f"Architecture ready for step {action.step_id}")
    return {**data, "artifacts": [_document(action, context, "Architecture", data)]}


async def handle_deployment(action: DeploymentAction, context: "ExecutionContext") -> Dict[str, Any]:
    prompt = DEPLOYMENT_TMPL.format(
        description=action.description,
        environment=action.environment,
        plan=action.plan_context or "None",
    )
    data = await _structured(prompt, context, "deploymentStrategy")
    info(f"Deployment plan ready for step {action.step_id}")
    return {**data, "artifacts": [_document(action, context, "Deployment", data)]}


async def handle_unblock(action: UnblockAction, context: "ExecutionContext") -> Dict[str, Any]:
    blocked = "\n".join(
        f"- {b.step_id}: {b.title} (missing: {', '.join(b.missing_dependencies) or 'none'})"
        for b in action.blocked_steps
    )
    prompt = UNBLOCK_TMPL.format(plan=action.plan_context or "None", blocked=blocked or "None",
                                 attempt=action.unblock_attempt)
    data = await _structured(prompt, context, "analysis")
    changes = data.get("stepChanges")
    if isinstance(changes, dict):
        changes = [changes]
    data["stepChanges"] = [c for c in changes or [] if isinstance(c, dict)]
    data.setdefault("rootCause", "")
    data.setdefault("solution", "")
    info(f"Unblock analysis proposes {len(data['stepChanges'])} step changes")
    return data
