"""Tests for the research handler: caching, browsing and the session deadline."""

import asyncio

import pytest

from conftest import reply
from devloop.agents import protocols as p
from devloop.agents.executor import ExecutionContext
from devloop.agents.research import handle_research
from devloop.tools.interfaces import PageContent, SearchResult


class FakeBrowser:
    def __init__(self, slow_queries=()):
        self.slow_queries = set(slow_queries)
        self.searched = []
        self.visited = []

    async def search(self, query, **opts):
        self.searched.append(query)
        if query in self.slow_queries:
            await asyncio.sleep(5)
        return [SearchResult(url=f"https://docs.example.org/{i}", title=f"{query} {i}") for i in range(5)]

    async def visit_url(self, url, **opts):
        self.visited.append(url)
        return PageContent(url=url, title="Docs", text_content="x" * 3000)


def _action(task, *queries):
    return p.ResearchAction(task_id=task.id, step_id="r", description="learn the basics", queries=list(queries))


class TestResearch:
    @pytest.mark.asyncio
    async def test_cached_queries_skip_collaborators(self, backend, llm, memory, task, agent_cfg):
        cached = {"query": "q", "sources": [{"url": None, "title": "t", "content": "cached answer"}]}
        ctx = ExecutionContext(llm=llm, memory=memory, task_id=task.id, config=agent_cfg,
                               research_cache={"q": cached})
        backend.push(reply({"summary": "S", "keyFindings": "one finding"}))

        out = await handle_research(_action(task, "q"), ctx)
        assert out["findings"] == [cached]
        assert out["synthesis"]["keyFindings"] == ["one finding"]
        assert out["synthesis"]["recommendations"] == []
        assert len(backend.calls) == 1
        assert memory.get_research(task.id)[0]["queries"] == ["q"]
        assert out["artifacts"][0].type == p.ArtifactType.RESEARCH

    @pytest.mark.asyncio
    async def test_direct_completion_without_browser(self, backend, llm, memory, task, agent_cfg):
        ctx = ExecutionContext(llm=llm, memory=memory, task_id=task.id, config=agent_cfg)
        backend.push("Use argparse.", reply({"summary": "argparse it is"}))
        out = await handle_research(_action(task, "python cli parsing"), ctx)
        assert out["findings"][0]["sources"][0]["content"] == "Use argparse."
        assert out["synthesis"]["summary"] == "argparse it is"
        assert ctx.research_cache["python cli parsing"] == out["findings"][0]

    @pytest.mark.asyncio
    async def test_browser_visits_top_results_only(self, backend, llm, memory, task, agent_cfg):
        llm.quota_exhausted = True
        browser = FakeBrowser()
        ctx = ExecutionContext(llm=llm, memory=memory, task_id=task.id, browser=browser, config=agent_cfg)
        out = await handle_research(_action(task, "asyncio timeouts"), ctx)
        sources = out["findings"][0]["sources"]
        assert len(browser.visited) == agent_cfg.max_research_results
        assert all(len(s["content"]) == 1000 for s in sources)
        assert "asyncio timeouts" in out["synthesis"]["summary"]
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_deadline_returns_partial_findings(self, llm, memory, task, agent_cfg):
        llm.quota_exhausted = True
        browser = FakeBrowser(slow_queries={"second"})
        ctx = ExecutionContext(llm=llm, memory=memory, task_id=task.id, browser=browser,
                               config=agent_cfg.model_copy(update={"research_timeout": 0.2}))
        out = await handle_research(_action(task, "first", "second", "third"), ctx)
        assert out["timed_out"]
        assert [f["query"] for f in out["findings"]] == ["first"]
        assert browser.searched == ["first", "second"]
        assert memory.get_research(task.id)[0]["timed_out"]

    @pytest.mark.asyncio
    async def test_failed_query_is_recorded(self, llm, memory, task, agent_cfg):
        llm.quota_exhausted = True
        ctx = ExecutionContext(llm=llm, memory=memory, task_id=task.id, config=agent_cfg)
        out = await handle_research(_action(task, "nothing to ask"), ctx)
        assert out["findings"][0]["sources"] == []
        assert "error" in out["findings"][0]
        assert out["synthesis"]["summary"] == "No research findings were gathered."

    @pytest.mark.asyncio
    async def test_description_is_the_default_query(self, backend, llm, memory, task, agent_cfg):
        ctx = ExecutionContext(llm=llm, memory=memory, task_id=task.id, config=agent_cfg)
        backend.push("answer", reply({"summary": "s"}))
        out = await handle_research(_action(task), ctx)
        assert out["queries"] == ["learn the basics"]
