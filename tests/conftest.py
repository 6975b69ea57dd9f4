"""Shared fixtures: a scripted completion backend, memory and a temporary workspace."""

import json
from pathlib import Path

import pytest

from devloop.agents.protocols import Plan, Step, Task
from devloop.core.config import AgentConfig, LLMConfig, MemoryConfig, RuntimeConfig
from devloop.core.llm import CompletionService, MockBackend
from devloop.core.memory import MemoryStore
from devloop.tools.fs import LocalFileSystem


class SleepRecorder:
    """Stands in for asyncio.sleep so backoff delays are recorded, not waited."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_llm_config(**overrides) -> LLMConfig:
    values = dict(provider="mock", mock_mode=True, retries=2, retry_delay=0.5, timeout=5.0)
    values.update(overrides)
    return LLMConfig(**values)


def make_plan(task_id: str, *steps: dict) -> Plan:
    return Plan(task_id=task_id, title="test plan", steps=[Step(**s) for s in steps])


def reply(value) -> str:
    return json.dumps(value)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def backend():
    return MockBackend(make_llm_config())


@pytest.fixture
def llm(backend, sleeper):
    return CompletionService(backend, make_llm_config(), sleep=sleeper)


@pytest.fixture
def agent_cfg():
    return AgentConfig(
        max_iterations=20,
        max_consecutive_failures=3,
        unblock_threshold=5,
        force_progress=True,
        reflection_threshold=3,
        reflection_window=10,
        research_timeout=5.0,
        max_research_results=3,
        idle_timeout=60.0,
        cleanup_interval=3600.0,
        max_relevant_files=10,
        max_file_size=1024 * 1024,
        capture_screenshots=False,
    )


@pytest.fixture
def memory(tmp_path):
    return MemoryStore(MemoryConfig(persist_to_disk=False, memory_path=str(tmp_path / "memory"),
                                    semantic_index=False))


@pytest.fixture
def runtime_cfg(tmp_path):
    return RuntimeConfig(
        workspace_root=str(tmp_path),
        output_dir="workspace",
        allow_shell=True,
        allow_write=True,
        blocked_commands=["shutdown", "reboot", "sudo"],
        allowed_command_prefixes=[],
        browser_search_url=None,
    )


@pytest.fixture
def workspace(tmp_path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def fs(workspace, runtime_cfg):
    return LocalFileSystem(workspace, runtime_cfg)


@pytest.fixture
def task(memory):
    t = Task(description="Build a tiny calculator module", requirements="Python 3")
    memory.add_task(t)
    return t
