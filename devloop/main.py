from __future__ import annotations
import argparse
import asyncio
from pathlib import Path

from rich.markup import escape
from rich.panel import Panel

from .core.config import MemoryConfig, agent_config, memory_config, runtime
from .core.errors import ConfigurationError, PersistenceError
from .core.llm import create_completion_service
from .core.logger import console, error, info, success, warn
from .core.memory import MemoryStore
from .orchestrator import Orchestrator
from .tools.browser import HttpBrowser
from .tools.fs import LocalFileSystem
from .tools.shell import LocalComputerControl

DEFAULT_GOAL_FILE = "prompts/goal.txt"
DEFAULT_FALLBACK_GOAL = (
    "Build a small command-line todo application in Python with add, list and done commands, "
    "storing todos in a JSON file, with a README and unit tests."
)


def load_text_file(path: Path) -> str | None:
    try:
        if path.exists():
            text = path.read_text(encoding="utf-8").strip()
            return text if text else None
    except OSError as e:
        warn(f"Failed to read goal file: {e}")
    return None


def resolve_goal(positional_goal: str | None, goal_file: str | None) -> str:
    # Precedence: command-line goal > goal-file > default goal file > built-in goal
    if positional_goal:
        return positional_goal

    if goal_file:
        gf = Path(goal_file)
        text = load_text_file(gf)
        if text:
            info(f"Loaded goal from file: {gf}")
            return text
        warn(f"Goal file is not usable: {gf}, falling back to the default")

    text = load_text_file(Path(DEFAULT_GOAL_FILE))
    if text:
        info(f"Loaded goal from the default goal file: {DEFAULT_GOAL_FILE}")
        return text

    warn("No goal found, using the built-in default goal.")
    return DEFAULT_FALLBACK_GOAL


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Autonomous development agent: plan, act and reflect on a task")
    parser.add_argument("goal", nargs="?", default=None, help="Natural-language task (overrides every other source)")
    parser.add_argument("--goal-file", "-f", default=None, help="Read the task from a file")
    parser.add_argument("--requirements", "-r", default="", help="Extra requirements for the task")
    parser.add_argument("--max-iterations", type=int, default=None,
                        help=f"Cycle limit (default {agent_config.max_iterations})")
    parser.add_argument("--persist", action="store_true", help="Mirror memory to disk")
    parser.add_argument("--memory-path", default=None, help=f"Where to persist memory (default {memory_config.memory_path})")
    parser.add_argument("--no-fs", action="store_true", help="Do not write generated files to the workspace")
    return parser


def build_orchestrator(args: argparse.Namespace) -> Orchestrator:
    config = agent_config
    if args.max_iterations is not None:
        config = agent_config.model_copy(update={"max_iterations": args.max_iterations})
    mem_config = MemoryConfig(
        persist_to_disk=args.persist or memory_config.persist_to_disk,
        memory_path=args.memory_path or memory_config.memory_path,
        semantic_index=memory_config.semantic_index,
    )
    return Orchestrator(
        create_completion_service(),
        MemoryStore(mem_config),
        file_system=None if args.no_fs else LocalFileSystem(),
        computer=LocalComputerControl() if runtime.allow_shell else None,
        browser=HttpBrowser() if runtime.browser_search_url else None,
        config=config,
    )


async def _run(goal: str, args: argparse.Namespace) -> int:
    orch = build_orchestrator(args)
    try:
        task = await orch.run_task(goal, args.requirements)
        report = orch.memory.get_final_report(task.id)
    finally:
        await orch.dispose()

    if report is not None:
        body = [report.summary or "(no summary)"]
        if report.key_accomplishments:
            body.append("\nAccomplishments:\n" + "\n".join(f"- {a}" for a in report.key_accomplishments))
        if report.future_improvements:
            body.append("\nFuture improvements:\n" + "\n".join(f"- {a}" for a in report.future_improvements))
        if report.error:
            body.append(f"\nNote: {report.error}")
        console.print(Panel(escape("\n".join(body)), title=f"Final report ({report.status})"))

    if task.status.value == "completed":
        success(f"Done. Task {task.id} completed.")
        return 0
    error(f"Task {task.id} ended as {task.status.value}: {task.last_error}")
    return 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    goal = resolve_goal(args.goal, args.goal_file)
    try:
        return asyncio.run(_run(goal, args))
    except (ConfigurationError, PersistenceError) as e:
        error(str(e))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
