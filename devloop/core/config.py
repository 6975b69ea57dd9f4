import os
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv(override=True)
# Non-hidden env files for environments that refuse dotfiles
load_dotenv("local.env", override=True)
load_dotenv("config/.env", override=True)


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _csv(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


class LLMConfig(BaseModel):
    provider: str = os.getenv("LLM_PROVIDER", "openai")
    base_url: str | None = os.getenv("LLM_BASE_URL")
    api_key: str | None = os.getenv("LLM_API_KEY")
    model: str | None = os.getenv("LLM_MODEL")
    temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "1000"))
    # seconds per completion request
    timeout: float = float(os.getenv("LLM_TIMEOUT", "60"))
    retries: int = int(os.getenv("LLM_RETRIES", "2"))
    # seconds before the first retry, doubled on every attempt
    retry_delay: float = float(os.getenv("LLM_RETRY_DELAY", "1.0"))
    mock_mode: bool = _flag("MOCK_MODE", "false")
    force_json: bool = _flag("FORCE_JSON", "true")


class RuntimeConfig(BaseModel):
    workspace_root: str = os.getenv("WORKSPACE_ROOT", os.getcwd())
    # Root of all generated output, relative to workspace_root
    output_dir: str = os.getenv("OUTPUT_DIR", "project")
    allow_shell: bool = _flag("ALLOW_SHELL", "true")
    allow_write: bool = _flag("ALLOW_WRITE", "true")
    blocked_commands: list[str] = Field(default_factory=lambda: _csv("BLOCKED_COMMANDS") or [
        "shutdown", "reboot", "mkfs", "sudo",
    ])
    allowed_command_prefixes: list[str] = Field(default_factory=lambda: _csv("ALLOWED_COMMAND_PREFIXES"))
    browser_search_url: str | None = os.getenv("BROWSER_SEARCH_URL")
    browser_timeout: float = float(os.getenv("BROWSER_TIMEOUT", "30"))


class AgentConfig(BaseModel):
    max_iterations: int = int(os.getenv("MAX_ITERATIONS", "20"))
    max_consecutive_failures: int = int(os.getenv("MAX_CONSECUTIVE_FAILURES", "3"))
    unblock_threshold: int = int(os.getenv("UNBLOCK_THRESHOLD", "5"))
    # Execute a blocked step with its dependencies bypassed once unblocking keeps failing
    force_progress: bool = _flag("FORCE_PROGRESS", "true")
    reflection_threshold: int = int(os.getenv("REFLECTION_THRESHOLD", "3"))
    reflection_window: int = int(os.getenv("REFLECTION_WINDOW", "10"))
    research_timeout: float = float(os.getenv("RESEARCH_TIMEOUT", "300"))
    max_research_results: int = int(os.getenv("MAX_RESEARCH_RESULTS", "3"))
    idle_timeout: float = float(os.getenv("IDLE_TIMEOUT", str(2 * 60 * 60)))
    cleanup_interval: float = float(os.getenv("CLEANUP_INTERVAL", str(30 * 60)))
    max_relevant_files: int = int(os.getenv("MAX_RELEVANT_FILES", "10"))
    max_file_size: int = int(os.getenv("MAX_FILE_SIZE", str(1024 * 1024)))
    capture_screenshots: bool = _flag("CAPTURE_SCREENSHOTS", "false")


class MemoryConfig(BaseModel):
    persist_to_disk: bool = _flag("MEMORY_PERSIST", "false")
    memory_path: str = os.getenv("MEMORY_PATH", "./agent-memory")
    semantic_index: bool = _flag("MEMORY_SEMANTIC_INDEX", "false")


llm_config = LLMConfig()
runtime = RuntimeConfig()
agent_config = AgentConfig()
memory_config = MemoryConfig()
