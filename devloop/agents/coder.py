from __future__ import annotations
import re
from typing import TYPE_CHECKING, Any, Dict, List

from ..core.errors import CollaboratorError
from ..core.llm import CompletionOptions
from ..core.logger import info, warn
from ..utils.json_utils import dumps, extension_for, extract_code_blocks, is_extraction_failure, parse_structured, raw_text
from .perception import language_for
from .protocols import Artifact, ArtifactType, CodeAction, CodeFile, TestingAction

if TYPE_CHECKING:
    from .executor import ExecutionContext

SYSTEM = (
    "You are the code generation module of an autonomous development agent. "
    "You write complete, working files and answer with strict JSON only."
)

CODE_TMPL = (
    "Implement this step of the project.\n\n"
    "Step: {title}\n{description}\n\n"
    "Plan:\n{plan}\n\n"
    "Project structure:\n{structure}\n\n"
    "Existing code:\n{existing}\n\n"
    "Output of the steps this one depends on:\n{dependencies}\n\n"
    "{force_note}"
    'Answer with JSON only: {{"files": [{{"path": "...", "language": "...", "code": "...", '
    '"description": "..."}}], "explanation": "..."}}'
)

FORCE_NOTE = (
    "Note: the prerequisites of this step could not be completed. "
    "Make reasonable assumptions about anything they would have provided.\n\n"
)

TEST_TMPL = (
    "Write tests for these components.\n\n"
    "Step: {description}\n\n"
    "Plan:\n{plan}\n\n"
    "Components:\n{components}\n\n"
    'Answer with JSON only: {{"testFiles": [{{"path": "...", "language": "...", "code": "...", '
    '"description": "..."}}], "testingStrategy": "...", "coverage": "..."}}'
)

# Heuristic to find the target file path from a step description
_RE_FILE_PATH = re.compile(
    r"(?:create|modify|generate|write|implement|update|add)\s+`?([\w./-]+\.[A-Za-z][A-Za-z0-9]*)`?",
    re.IGNORECASE,
)
_RE_SLUG = re.compile(r"[^a-z0-9]+")


def _extract_path_from_desc(desc: str) -> str | None:
    match = _RE_FILE_PATH.search(desc or "")
    if match:
        return match.group(1)
    return None


def _fallback_name(action: Any, index: int, extension: str) -> str:
    base = _RE_SLUG.sub("-", (action.step_id or action.id).lower()).strip("-") or "generated"
    suffix = f"-{index + 1}" if index else ""
    return f"generated/{base}{suffix}{extension}"


def recover_files(text: str, action: Any) -> List[CodeFile]:
    """Files from fenced code blocks in prose; the whole text when there are none."""
    blocks = extract_code_blocks(text)
    described = _extract_path_from_desc(action.description)
    files: List[CodeFile] = []
    if blocks:
        for index, block in enumerate(blocks):
            path = block.path
            if path is None and index == 0 and described:
                path = described
            if path is None:
                path = _fallback_name(action, index, extension_for(block.language))
            files.append(CodeFile(path=path, language=block.language or language_for(path), code=block.code))
        return files
    if text.strip():
        path = described or _fallback_name(action, 0, ".txt")
        files.append(CodeFile(path=path, language=language_for(path), code=text))
    return files


def _normalize_files(raw_files: Any) -> List[CodeFile]:
    files: List[CodeFile] = []
    for raw in raw_files or []:
        if not isinstance(raw, dict):
            continue
        path = str(raw.get("path") or raw.get("filename") or "").replace("\\", "/").lstrip("/")
        code = raw.get("code", raw.get("content"))
        if not path or code is None:
            warn(f"Skipping file without path or code: {str(raw)[:120]}")
            continue
        files.append(CodeFile(path=path, language=str(raw.get("language") or language_for(path)), code=str(code)))
    return files


async def _write_files(files: List[CodeFile], context: "ExecutionContext") -> Dict[str, List[str]]:
    written: List[str] = []
    failed: List[str] = []
    if context.file_system is None:
        return {"written": written, "write_failures": failed}
    for file in files:
        try:
            await context.file_system.write_file(file.path, file.code)
            written.append(file.path)
        except (CollaboratorError, OSError) as e:
            warn(f"Failed to write {file.path}, continuing: {e}")
            failed.append(file.path)
    return {"written": written, "write_failures": failed}


async def _generate(prompt: str, key: str, action: Any, context: "ExecutionContext") -> Dict[str, Any]:
    completion = await context.llm.complete(f"{SYSTEM}\n\n{prompt}", CompletionOptions(response_format="json"))
    data = parse_structured(completion)
    recovered = False
    files: List[CodeFile] = []
    if isinstance(data, list):
        # a bare array of file objects
        data = {key: data}
    if isinstance(data, dict) and not is_extraction_failure(data):
        files = _normalize_files(data.get(key) or data.get("files"))
    if not files:
        recovered = True
        files = recover_files(raw_text(completion), action)
        info(f"Recovered {len(files)} files from an unstructured completion")
        data = data if isinstance(data, dict) else {}
    return {"data": data, "files": files, "recovered": recovered}


def _artifacts(files: List[CodeFile], artifact_type: ArtifactType, action: Any, context: "ExecutionContext",
               descriptions: Dict[str, str]) -> List[Artifact]:
    return [
        Artifact(
            type=artifact_type,
            path=f.path,
            content=f.code,
            description=descriptions.get(f.path) or action.description[:200],
            task_id=action.task_id or context.task_id,
            step_id=action.step_id,
        )
        for f in files
    ]


def _descriptions(data: Dict[str, Any], key: str) -> Dict[str, str]:
    raw = data.get(key) if isinstance(data.get(key), list) else []
    return {str(f.get("path")): str(f.get("description") or "") for f in raw if isinstance(f, dict)}


async def handle_generate_code(action: CodeAction, context: "ExecutionContext") -> Dict[str, Any]:
    step = action.step
    existing = "\n\n".join(f"--- {f.path} ---\n{f.code[:3000]}" for f in action.existing_code) or "None"
    dependencies = "\n".join(
        f"- {a.path or a.type.value}: {(a.description or '')[:200]}" for a in action.dependency_artifacts
    ) or "None"
    prompt = CODE_TMPL.format(
        title=step.title if step else action.description[:80],
        description=step.description if step else action.description,
        plan=action.plan_context or "None",
        structure=dumps((action.project_structure or {}).get("files", []), limit=3000),
        existing=existing,
        dependencies=dependencies,
        force_note=FORCE_NOTE if action.force_progress else "",
    )
    out = await _generate(prompt, "files", action, context)
    files: List[CodeFile] = out["files"]
    writes = await _write_files(files, context)
    info(f"Generated {len(files)} files for step {action.step_id}")
    return {
        "files": [{"path": f.path, "language": f.language} for f in files],
        "explanation": out["data"].get("explanation", ""),
        "recovered": out["recovered"],
        "force_progress": action.force_progress,
        **writes,
        "artifacts": _artifacts(files, ArtifactType.CODE, action, context, _descriptions(out["data"], "files")),
    }


async def handle_testing(action: TestingAction, context: "ExecutionContext") -> Dict[str, Any]:
    components = "\n\n".join(
        f"--- {a.path} ---\n{(a.content or '')[:3000]}" for a in action.components_to_test
    ) or "No code artifacts yet; derive tests from the plan."
    prompt = TEST_TMPL.format(description=action.description, plan=action.plan_context or "None",
                              components=components)
    out = await _generate(prompt, "testFiles", action, context)
    files: List[CodeFile] = out["files"]
    writes = await _write_files(files, context)
    info(f"Generated {len(files)} test files for step {action.step_id}")
    return {
        "testFiles": [{"path": f.path, "language": f.language} for f in files],
        "testingStrategy": out["data"].get("testingStrategy", ""),
        "coverage": out["data"].get("coverage", ""),
        "recovered": out["recovered"],
        **writes,
        "artifacts": _artifacts(files, ArtifactType.TEST, action, context, _descriptions(out["data"], "testFiles")),
    }
