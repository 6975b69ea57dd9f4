from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING, Any, Dict, List

from ..core.errors import CollaboratorError, CompletionError
from ..core.llm import CompletionOptions
from ..core.logger import info, warn
from ..utils.json_utils import dumps, is_extraction_failure, parse_structured, raw_text
from .protocols import Artifact, ArtifactType, ResearchAction

if TYPE_CHECKING:
    from .executor import ExecutionContext

EXTRACT_TMPL = (
    "Extract the information relevant to the research query from this page.\n\n"
    "Query: {query}\nPage title: {title}\nURL: {url}\n\n"
    "Content:\n{content}\n\n"
    "Answer with a concise technical summary."
)

DIRECT_TMPL = (
    "You are a research assistant for a software developer.\n\n"
    "Research query: {query}\n\n"
    "Context: {context}\n\n"
    "Give a concise technical answer: relevant libraries, APIs, patterns and pitfalls."
)

SYNTHESIS_TMPL = (
    "Synthesize these research findings into one report.\n\n"
    "Research goal: {goal}\n\n"
    "Findings:\n{findings}\n\n"
    'Answer with JSON only: {{"summary": "...", "keyFindings": ["..."], '
    '"technicalDetails": ["..."], "recommendations": ["..."]}}'
)

PAGE_PREVIEW_CHARS = 1000
PAGE_PROMPT_CHARS = 8000


async def _research_query(query: str, action: ResearchAction, context: "ExecutionContext") -> Dict[str, Any]:
    if query in context.research_cache:
        info(f"Research cache hit: {query}")
        return context.research_cache[query]

    finding: Dict[str, Any] = {"query": query, "sources": []}
    if context.browser is not None:
        results = await context.browser.search(query)
        for result in results[:context.config.max_research_results]:
            try:
                page = await context.browser.visit_url(result.url)
            except CollaboratorError as e:
                warn(f"Could not visit {result.url}: {e}")
                continue
            if context.llm.available:
                try:
                    content = await context.llm.complete_text(EXTRACT_TMPL.format(
                        query=query, title=page.title, url=page.url,
                        content=page.text_content[:PAGE_PROMPT_CHARS],
                    ))
                except CompletionError as e:
                    warn(f"Extraction failed for {page.url}: {e}")
                    content = page.text_content[:PAGE_PREVIEW_CHARS]
            else:
                content = page.text_content[:PAGE_PREVIEW_CHARS]
            finding["sources"].append({"url": page.url, "title": page.title or result.title, "content": content})
    elif context.llm.available:
        text = await context.llm.complete_text(DIRECT_TMPL.format(
            query=query, context=dumps(action.research_context, limit=2000),
        ))
        finding["sources"].append({"url": None, "title": "completion", "content": text})
    else:
        raise CollaboratorError("Research needs a browser or an available completion service")

    context.research_cache[query] = finding
    return finding


async def _gather(action: ResearchAction, context: "ExecutionContext", findings: List[Dict[str, Any]]) -> None:
    for query in action.queries:
        try:
            findings.append(await _research_query(query, action, context))
        except (CollaboratorError, CompletionError) as e:
            warn(f"Research query failed: {query}: {e}")
            findings.append({"query": query, "sources": [], "error": str(e)})


def _textual_summary(findings: List[Dict[str, Any]]) -> Dict[str, Any]:
    lines = []
    for finding in findings:
        for source in finding.get("sources", []):
            lines.append(f"[{finding['query']}] {source.get('title') or ''}: {str(source.get('content'))[:500]}")
    return {
        "summary": "\n".join(lines) or "No research findings were gathered.",
        "keyFindings": [],
        "technicalDetails": [],
        "recommendations": [],
    }


async def synthesize(goal: str, findings: List[Dict[str, Any]], context: "ExecutionContext") -> Dict[str, Any]:
    if not context.llm.available or not any(f.get("sources") for f in findings):
        return _textual_summary(findings)
    try:
        completion = await context.llm.complete(
            SYNTHESIS_TMPL.format(goal=goal, findings=dumps(findings, limit=12000)),
            CompletionOptions(response_format="json", temperature=0.3),
        )
    except CompletionError as e:
        warn(f"Research synthesis failed, using a textual summary: {e}")
        return _textual_summary(findings)
    data = parse_structured(completion)
    if not isinstance(data, dict) or is_extraction_failure(data):
        summary = _textual_summary(findings)
        summary["summary"] = raw_text(completion)[:2000] or summary["summary"]
        summary["extractionFailed"] = True
        return summary
    for key in ("keyFindings", "technicalDetails", "recommendations"):
        if not isinstance(data.get(key), list):
            data[key] = [data[key]] if data.get(key) else []
    data.setdefault("summary", "")
    return data


async def handle_research(action: ResearchAction, context: "ExecutionContext") -> Dict[str, Any]:
    """Fan out over the queries, then synthesize; the session as a whole is bounded by research_timeout."""
    if not action.queries:
        action = action.model_copy(update={"queries": [action.description]})
    info(f"Researching {len(action.queries)} queries")
    findings: List[Dict[str, Any]] = []
    timed_out = False
    try:
        await asyncio.wait_for(_gather(action, context, findings), timeout=context.config.research_timeout)
    except asyncio.TimeoutError:
        timed_out = True
        warn(f"Research session hit the {context.config.research_timeout}s deadline with "
             f"{len(findings)}/{len(action.queries)} queries done")

    synthesis = _textual_summary(findings) if timed_out else await synthesize(action.description, findings, context)
    task_id = action.task_id or context.task_id
    record = {
        "task_id": task_id,
        "step_id": action.step_id,
        "queries": list(action.queries),
        "findings": findings,
        "synthesis": synthesis,
        "timed_out": timed_out,
    }
    context.memory.store_research_results(record)
    return {
        "queries": list(action.queries),
        "findings": findings,
        "synthesis": synthesis,
        "timed_out": timed_out,
        "artifacts": [Artifact(
            type=ArtifactType.RESEARCH,
            content=dumps(synthesis),
            description=f"Research: {action.description[:120]}",
            task_id=task_id,
            step_id=action.step_id,
        )],
    }
