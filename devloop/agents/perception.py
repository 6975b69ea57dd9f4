from __future__ import annotations
import json
import re
import tomllib
from collections import Counter
from typing import Any, Dict, List, Optional

from ..core.config import AgentConfig, agent_config
from ..core.logger import debug, info, warn
from ..core.memory import MemoryStore
from .protocols import CodeFile, CurrentPlanView, PerceivedState, Plan, Step

COMMON_WORDS = {
    "with", "that", "this", "from", "have", "when", "will", "what", "which",
    "make", "like", "time", "just", "know", "take", "into", "should", "each",
    "also", "then", "them", "their", "there", "these", "those", "using",
}

LANGUAGE_BY_EXTENSION = {
    ".py": "python", ".js": "javascript", ".jsx": "jsx", ".ts": "typescript", ".tsx": "tsx",
    ".html": "html", ".css": "css", ".scss": "scss", ".less": "less", ".vue": "vue",
    ".svelte": "svelte", ".json": "json", ".md": "markdown", ".toml": "toml",
    ".yml": "yaml", ".yaml": "yaml", ".sh": "bash", ".sql": "sql",
}

_RE_NON_WORD = re.compile(r"[^\w\s]")


def extract_keywords(description: str, limit: int = 10) -> List[str]:
    """Words longer than 3 characters, common words removed, most frequent first."""
    if not description:
        return []
    words = [w for w in _RE_NON_WORD.sub(" ", description.lower()).split() if len(w) > 3]
    counts = Counter(w for w in words if w not in COMMON_WORDS)
    # Counter.most_common is stable for ties, so first occurrence wins
    return [w for w, _ in counts.most_common(limit)]


def language_for(path: str) -> str:
    for ext, language in LANGUAGE_BY_EXTENSION.items():
        if path.endswith(ext):
            return language
    return "text"


def rank_paths(paths: List[str], keywords: List[str]) -> List[str]:
    """Paths with a relevant extension and at least one keyword hit, best match first."""
    scored = []
    for index, path in enumerate(paths):
        if path.endswith("/") or not any(path.endswith(ext) for ext in LANGUAGE_BY_EXTENSION):
            continue
        lowered = path.lower()
        score = sum(1 for k in keywords if k in lowered)
        if score:
            scored.append((-score, index, path))
    return [path for _, _, path in sorted(scored)]


def build_directory_tree(files: List[str]) -> Dict[str, Any]:
    root: Dict[str, Any] = {"name": "root", "type": "directory", "children": {}}
    for file in files:
        parts = [p for p in file.split("/") if p]
        if not parts:
            continue
        level = root["children"]
        for part in parts[:-1]:
            node = level.setdefault(part, {"name": part, "type": "directory", "children": {}})
            level = node["children"]
        if file.endswith("/"):
            level.setdefault(parts[-1], {"name": parts[-1], "type": "directory", "children": {}})
        else:
            level[parts[-1]] = {"name": parts[-1], "type": "file"}
    return root


def current_step_of(plan: Plan) -> Optional[Step]:
    in_progress = plan.in_progress_steps()
    if in_progress:
        return in_progress[0]
    runnable = plan.runnable_steps()
    return runnable[0] if runnable else None


class Perception:
    """
    Builds one cycle's view of the world. Every probe is isolated: a failing
    probe is logged and its field left empty, perceive() itself never raises.
    """

    def __init__(self, file_system=None, computer=None, config: AgentConfig | None = None):
        self.file_system = file_system
        self.computer = computer
        self.config = config or agent_config

    async def perceive(self, memory: MemoryStore, plan: Plan) -> PerceivedState:
        debug(f"Perceiving state for plan {plan.id}")
        step = current_step_of(plan)
        state = PerceivedState(current_plan=CurrentPlanView(
            id=plan.id,
            progress=plan.progress(),
            completed_count=len(plan.completed_steps()),
            pending_count=len(plan.pending_steps()),
            current_step=step,
        ))

        if self.file_system is not None:
            try:
                state.project_structure = await self._project_structure()
            except Exception as e:
                warn(f"Failed to perceive project structure: {e}")

        if step is not None:
            try:
                state.relevant_code = await self._relevant_code(step, state.project_structure, memory, plan.task_id)
            except Exception as e:
                warn(f"Failed to perceive relevant code: {e}")

        if self.computer is not None:
            try:
                state.environment_info = await self._environment_info()
            except Exception as e:
                warn(f"Failed to perceive system info: {e}")

            if self.config.capture_screenshots:
                try:
                    state.visual_snapshot = await self.computer.take_screenshot()
                except Exception as e:
                    warn(f"Failed to take screenshot: {e}")

        return state

    async def _project_structure(self) -> Dict[str, Any]:
        files = await self.file_system.list_files(".", recursive=True)
        structure: Dict[str, Any] = {"files": files, "directory_structure": build_directory_tree(files)}
        if "package.json" in files:
            try:
                structure["package_json"] = json.loads(await self.file_system.read_file("package.json") or "{}")
            except ValueError as e:
                warn(f"Failed to parse package.json: {e}")
        if "pyproject.toml" in files:
            try:
                structure["pyproject"] = tomllib.loads(await self.file_system.read_file("pyproject.toml") or "")
            except tomllib.TOMLDecodeError as e:
                warn(f"Failed to parse pyproject.toml: {e}")
        return structure

    async def _relevant_code(self, step: Step, structure: Optional[Dict[str, Any]], memory: MemoryStore,
                             task_id: str) -> List[CodeFile]:
        keywords = extract_keywords(step.description)
        if not keywords:
            return []
        limit = self.config.max_relevant_files

        if self.file_system is None:
            codebase = memory.get_codebase(task_id)
            return [
                CodeFile(path=path, language=language_for(path), code=codebase[path].content or "")
                for path in rank_paths(sorted(codebase), keywords)[:limit]
                if len(codebase[path].content or "") <= self.config.max_file_size
            ]

        if not structure:
            return []
        relevant: List[CodeFile] = []
        for path in rank_paths(structure.get("files", []), keywords)[:limit]:
            try:
                stat = await self.file_system.stat(path)
                if stat.size > self.config.max_file_size:
                    info(f"Skipping large file: {path} ({stat.size} bytes)")
                    continue
                content = await self.file_system.read_file(path)
            except Exception as e:
                warn(f"Failed to read file {path}: {e}")
                continue
            relevant.append(CodeFile(path=path, language=language_for(path), code=content or ""))
        return relevant

    async def _environment_info(self) -> Dict[str, Any]:
        system_info = getattr(self.computer, "system_info", None)
        if system_info is not None:
            return await system_info()
        result: Dict[str, Any] = {}
        for key, command in (("uname", "uname -a"), ("memory", "free -m"), ("disk", "df -h")):
            output = await self.computer.execute_command(command)
            result[key] = output.get("stdout", "") if isinstance(output, dict) else str(output)
        return result
