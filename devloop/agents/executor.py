from __future__ import annotations
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.config import AgentConfig, agent_config
from ..core.errors import CollaboratorError, error_kind
from ..core.llm import CompletionOptions, CompletionService
from ..core.logger import debug, error, info
from ..core.memory import MemoryStore
from ..tools.interfaces import Browser, ComputerControl, FileSystem
from .protocols import (
    Action, ActionResult, ActionType, Artifact, BrowseAction, ComputerControlAction, FileOperationAction,
    ResultStatus,
)


@dataclass
class ExecutionContext:
    llm: CompletionService
    memory: MemoryStore
    task_id: Optional[str] = None
    file_system: Optional[FileSystem] = None
    browser: Optional[Browser] = None
    computer: Optional[ComputerControl] = None
    config: AgentConfig = field(default_factory=lambda: agent_config)
    # query -> findings, shared by every run of one orchestrator
    research_cache: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Any, ExecutionContext], Awaitable[Dict[str, Any]]]


class Executor:
    def __init__(self, register_defaults: bool = True):
        self.handlers: Dict[ActionType, Handler] = {}
        if register_defaults:
            self.register_defaults()

    def register_handler(self, action_type: ActionType, handler: Handler) -> None:
        self.handlers[ActionType(action_type)] = handler

    def register_defaults(self) -> None:
        from .architect import handle_architecture, handle_deployment, handle_unblock
        from .coder import handle_generate_code, handle_testing
        from .research import handle_research

        self.register_handler(ActionType.RESEARCH, handle_research)
        self.register_handler(ActionType.GENERATE_CODE, handle_generate_code)
        self.register_handler(ActionType.ARCHITECTURE, handle_architecture)
        self.register_handler(ActionType.TESTING, handle_testing)
        self.register_handler(ActionType.DEPLOYMENT, handle_deployment)
        self.register_handler(ActionType.UNBLOCK_PLAN, handle_unblock)
        self.register_handler(ActionType.BROWSE_WEB, handle_browse)
        self.register_handler(ActionType.FILE_OPERATION, handle_file_operation)
        self.register_handler(ActionType.COMPUTER_CONTROL, handle_computer_control)

    async def execute(self, action: Action, context: ExecutionContext) -> ActionResult:
        """Run the handler for ``action``; every failure comes back as a failed result."""
        handler = self.handlers.get(action.type)
        if handler is None:
            error(f"Unsupported action type: {action.type.value}")
            return ActionResult(
                action_id=action.id,
                status=ResultStatus.FAILED,
                error=f"Unsupported action type: {action.type.value}",
                error_kind="unsupported",
                action=action,
            )

        info(f"Executing {action.type.value} action {action.id}" + (f" for step {action.step_id}" if action.step_id else ""))
        try:
            payload = await handler(action, context)
        except Exception as e:
            error(f"{action.type.value} action {action.id} failed: {e}")
            return ActionResult(
                action_id=action.id,
                status=ResultStatus.FAILED,
                error=str(e) or type(e).__name__,
                error_kind=error_kind(e),
                stack=traceback.format_exc(),
                action=action,
            )

        payload = dict(payload or {})
        artifacts = self._lift_artifacts(payload.pop("artifacts", []), action, context)
        debug(f"{action.type.value} action {action.id} produced {len(artifacts)} artifacts")
        return ActionResult(
            action_id=action.id,
            status=ResultStatus.SUCCESS,
            payload=payload,
            artifacts=artifacts,
            action=action,
        )

    @staticmethod
    def _lift_artifacts(raw: List[Any], action: Action, context: ExecutionContext) -> List[Artifact]:
        artifacts = []
        for item in raw or []:
            artifact = item if isinstance(item, Artifact) else Artifact.model_validate(item)
            if artifact.task_id is None:
                artifact.task_id = action.task_id or context.task_id
            if artifact.step_id is None:
                artifact.step_id = action.step_id
            artifacts.append(artifact)
        return artifacts


# -- pass-through handlers --------------------------------------------------

async def handle_browse(action: BrowseAction, context: ExecutionContext) -> Dict[str, Any]:
    if context.browser is None:
        raise CollaboratorError("No browser collaborator is configured")
    if action.url:
        page = await context.browser.visit_url(action.url)
        result: Dict[str, Any] = {"url": page.url, "title": page.title, "status_code": page.status_code,
                                  "text": page.text_content[:5000]}
        if action.analyze_content and context.llm.available:
            prompt = (
                f"Summarize the key technical information on this page for: {action.description}\n\n"
                f"Title: {page.title}\n\n{page.text_content[:8000]}"
            )
            result["analysis"] = await context.llm.complete_text(prompt, CompletionOptions(temperature=0.3))
        return result
    if action.search_query:
        results = await context.browser.search(action.search_query)
        return {"query": action.search_query, "results": [r.model_dump() for r in results]}
    raise CollaboratorError("browse_web needs a url or a search_query")


async def handle_file_operation(action: FileOperationAction, context: ExecutionContext) -> Dict[str, Any]:
    fs = context.file_system
    if fs is None:
        raise CollaboratorError("No file-system collaborator is configured")
    op, path = action.operation, action.path or "."
    if op == "read":
        return {"path": path, "content": await fs.read_file(path)}
    if op == "write":
        return {"path": path, "written": await fs.write_file(path, action.content or "")}
    if op == "delete":
        return {"path": path, "deleted": await fs.delete_file(path)}
    if op == "list":
        return {"path": path, "files": await fs.list_files(path, recursive=True)}
    return {"path": path, "created": await fs.create_directory(path)}


async def handle_computer_control(action: ComputerControlAction, context: ExecutionContext) -> Dict[str, Any]:
    computer = context.computer
    if computer is None:
        raise CollaboratorError("No computer-control collaborator is configured")
    kind = action.control_type
    if kind == "execute":
        if not action.command:
            raise CollaboratorError("computer_control execute needs a command")
        return await computer.execute_command(action.command, action.options)
    if kind == "screenshot":
        return {"screenshot": await computer.take_screenshot(action.region)}
    if kind == "input":
        return {"input": await computer.send_input(action.input_type or "text", action.input_value or "",
                                                   action.options)}
    return {"app": await computer.control_app(action.app_action or "", action.app_name or "", action.options)}
