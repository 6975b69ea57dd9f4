from __future__ import annotations
import json
import re
from typing import Any, List, Optional

from pydantic import BaseModel

from ..core.errors import ExtractionError
from ..core.llm import Raw, Structured

RAW_TEXT_LIMIT = 500

_RE_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_RE_OPEN_BRACE = re.compile(r"\{")
_RE_CODE_FENCE = re.compile(r"```([\w+#.-]*)[^\n]*\n([\s\S]*?)```")
# "File: src/app.py" / "`src/app.py`" on the line right before a fence
_RE_PATH_HINT = re.compile(r"(?:file(?:name)?|path)?\s*[:=]?\s*`?([\w./\\-]+\.[A-Za-z][A-Za-z0-9]*)`?\s*:?\s*$", re.IGNORECASE)

LANGUAGE_EXTENSIONS = {
    "python": ".py", "py": ".py",
    "javascript": ".js", "js": ".js", "jsx": ".jsx",
    "typescript": ".ts", "ts": ".ts", "tsx": ".tsx",
    "html": ".html", "css": ".css", "scss": ".scss",
    "json": ".json", "yaml": ".yml", "yml": ".yml", "toml": ".toml",
    "bash": ".sh", "sh": ".sh", "shell": ".sh",
    "markdown": ".md", "md": ".md", "sql": ".sql",
    "go": ".go", "rust": ".rs", "java": ".java",
}


def _loads(text: str) -> Any:
    return json.loads(text)


def extract_json(text: str) -> Any:
    """
    Layered JSON extraction for completion text:
    1. the whole text,
    2. the substring between the first '{' and the last '}',
    3. the body of a ```json fenced block,
    4. a scan for the first brace-delimited object that decodes on its own.
    Raises ExtractionError when every layer fails.
    """
    if not text or not text.strip():
        raise ExtractionError("Cannot parse JSON from empty string.")

    try:
        return _loads(text)
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            return _loads(text[start:end + 1])
        except json.JSONDecodeError:
            pass

    match = _RE_JSON_FENCE.search(text)
    if match:
        try:
            return _loads(match.group(1))
        except json.JSONDecodeError:
            pass

    decoder = json.JSONDecoder()
    for match in _RE_OPEN_BRACE.finditer(text):
        try:
            value, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value

    raise ExtractionError(f"No valid JSON object found in the text: {text[:200]}...")


def raw_text(response: Any) -> str:
    """Best-effort text view of a completion (Raw, Structured or plain value)."""
    if isinstance(response, Raw):
        return response.text
    if isinstance(response, Structured):
        response = response.value
    if isinstance(response, str):
        return response
    if isinstance(response, BaseModel):
        return response.model_dump_json()
    try:
        return json.dumps(response, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(response)


def parse_structured(response: Any, default: Any = None) -> Any:
    """
    Never raises. Structured completions are returned as-is, text goes through
    extract_json, and when that fails the caller's default (or a minimal
    {"text", "extractionFailed"} record) comes back instead.
    """
    if isinstance(response, Structured):
        return response.value
    if isinstance(response, Raw):
        response = response.text
    if isinstance(response, (dict, list)):
        return response
    if isinstance(response, str):
        try:
            return extract_json(response)
        except ExtractionError:
            if default is not None:
                return default
            return {"text": response[:RAW_TEXT_LIMIT], "extractionFailed": True}
    if default is not None:
        return default
    return {"error": "Unsupported response type", "extractionFailed": True}


def is_extraction_failure(value: Any) -> bool:
    return isinstance(value, dict) and bool(value.get("extractionFailed"))


class CodeBlock(BaseModel):
    language: str = ""
    code: str
    path: Optional[str] = None


def extract_code_blocks(text: str) -> List[CodeBlock]:
    """Recover fenced code blocks from prose, with an optional path hint from the preceding line."""
    blocks: List[CodeBlock] = []
    if not text:
        return blocks
    for match in _RE_CODE_FENCE.finditer(text):
        language = (match.group(1) or "").lower()
        preceding = text[:match.start()].rstrip("\n").rsplit("\n", 1)[-1]
        hint = _RE_PATH_HINT.search(preceding.strip()) if preceding.strip() else None
        blocks.append(CodeBlock(
            language=language,
            code=match.group(2),
            path=hint.group(1).replace("\\", "/") if hint else None,
        ))
    return blocks


def extension_for(language: str, fallback: str = ".txt") -> str:
    return LANGUAGE_EXTENSIONS.get((language or "").lower(), fallback)


def dumps(value: Any, limit: int | None = None) -> str:
    """Pretty JSON for prompts; pydantic models are dumped in JSON mode."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    elif isinstance(value, list):
        value = [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
    text = json.dumps(value, indent=2, ensure_ascii=False, default=str)
    if limit is not None and len(text) > limit:
        return text[:limit] + "\n...(truncated)"
    return text
