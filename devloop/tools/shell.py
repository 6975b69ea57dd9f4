from __future__ import annotations
import asyncio
import platform
import re
from typing import Any, Dict, List, Optional

from ..core.config import RuntimeConfig, runtime
from ..core.errors import CollaboratorError, CommandBlockedError
from ..core.logger import error, info, warn

# Refused regardless of configuration
_DANGEROUS_PATTERNS = [
    re.compile(r"rm\s+(-rf?|--recursive)\b", re.IGNORECASE),
    re.compile(r"del\s+/[aqsf]", re.IGNORECASE),
    re.compile(r"format\s+[a-z]:", re.IGNORECASE),
    re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),
    re.compile(r"\bdd\s+if=", re.IGNORECASE),
    re.compile(r">\s*/dev/(null|zero|random)\b", re.IGNORECASE),
    re.compile(r"\bmkfs(\.\w+)?\b", re.IGNORECASE),
]


def check_command(command: str, config: RuntimeConfig | None = None) -> None:
    """Raise ``CommandBlockedError`` if ``command`` may not run."""
    config = config or runtime
    c = command.strip()
    lowered = c.lower()
    for pattern in _DANGEROUS_PATTERNS:
        if pattern.search(c):
            raise CommandBlockedError(f"Command matches a dangerous pattern: {command}")
    first = lowered.split()[0] if lowered.split() else ""
    for blocked in config.blocked_commands:
        b = blocked.lower()
        if first == b or lowered.startswith(b + " ") or f"| {b}" in lowered or f"&& {b}" in lowered:
            raise CommandBlockedError(f"Command is on the block list: {command}")
    prefixes: List[str] = config.allowed_command_prefixes
    if prefixes and not any(lowered.startswith(p.lower()) for p in prefixes):
        raise CommandBlockedError(f"Command is not on the allow list: {command}")


class LocalComputerControl:
    """Runs shell commands on the local machine behind a deny list."""

    def __init__(self, config: RuntimeConfig | None = None, default_timeout: float = 180):
        self.config = config or runtime
        self.default_timeout = default_timeout

    async def execute_command(self, command: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = options or {}
        if not self.config.allow_shell:
            raise CommandBlockedError(f"Shell execution is disabled: {command}")
        check_command(command, self.config)
        timeout = options.get("timeout", self.default_timeout)
        cwd = options.get("cwd") or self.config.workspace_root
        info(f"Running command: {command}")
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            error(f"Command timed out after {timeout}s: {command}")
            raise CollaboratorError(f"Command timed out after {timeout}s: {command}")
        stdout = out.decode("utf-8", errors="replace")
        stderr = err.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            warn(f"Command exited with {proc.returncode}\nSTDERR: {stderr[:500]}")
        return {"command": command, "exit_code": proc.returncode, "stdout": stdout, "stderr": stderr}

    async def system_info(self) -> Dict[str, Any]:
        """Best-effort host summary; individual probe failures are recorded, not raised."""
        summary: Dict[str, Any] = {
            "platform": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
            "python": platform.python_version(),
        }
        if platform.system() == "Windows":
            return summary
        for key, command in (("uname", "uname -a"), ("memory", "free -m"), ("disk", "df -h")):
            try:
                result = await self.execute_command(command, {"timeout": 10})
                summary[key] = result["stdout"].strip()
            except (CollaboratorError, OSError) as e:
                summary[key] = f"unavailable: {e}"
        return summary

    async def take_screenshot(self, region: Optional[Dict[str, int]] = None) -> Any:
        raise CollaboratorError("Screenshots are not supported by the local shell collaborator")

    async def send_input(self, input_type: str, value: str, options: Optional[Dict[str, Any]] = None) -> Any:
        raise CollaboratorError(f"Input injection is not supported: {input_type}")

    async def control_app(self, app_action: str, app_name: str, options: Optional[Dict[str, Any]] = None) -> Any:
        raise CollaboratorError(f"Application control is not supported: {app_action} {app_name}")
