from __future__ import annotations
import os
from pathlib import Path
from typing import List, Optional

from ..core.config import RuntimeConfig, runtime
from ..core.errors import CollaboratorError
from ..core.logger import info, warn
from .interfaces import FileStat

_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}


class LocalFileSystem:
    """File-system collaborator rooted at the workspace output directory."""

    def __init__(self, root: str | Path | None = None, config: RuntimeConfig | None = None):
        self.config = config or runtime
        if root is None:
            root = Path(self.config.workspace_root) / self.config.output_dir
        self.root = Path(root).resolve()

    def resolve_path(self, path: str) -> Path:
        p = Path(path.replace("\\", "/"))
        if not p.is_absolute():
            p = self.root / p
        p = p.resolve()
        if not p.is_relative_to(self.root):
            raise CollaboratorError(f"Path escapes the workspace: {path}")
        return p

    def relative(self, p: Path) -> str:
        return p.relative_to(self.root).as_posix()

    async def write_file(self, path: str, content: str, overwrite: bool = True) -> str:
        if not self.config.allow_write:
            raise CollaboratorError(f"Writes are disabled: {path}")
        p = self.resolve_path(path)
        if p.exists() and not overwrite:
            warn(f"File exists and overwrite is off: {p}")
            return "skipped"
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(content, encoding="utf-8")
        except OSError as e:
            raise CollaboratorError(f"Failed to write {path}: {e}") from e
        info(f"Wrote file: {p}")
        return str(p)

    async def read_file(self, path: str) -> Optional[str]:
        p = self.resolve_path(path)
        if not p.exists():
            warn(f"File does not exist: {p}")
            return None
        try:
            return p.read_text(encoding="utf-8", errors="ignore")
        except OSError as e:
            raise CollaboratorError(f"Failed to read {path}: {e}") from e

    async def delete_file(self, path: str) -> bool:
        if not self.config.allow_write:
            raise CollaboratorError(f"Writes are disabled: {path}")
        p = self.resolve_path(path)
        if not p.exists():
            return False
        try:
            p.unlink()
        except OSError as e:
            raise CollaboratorError(f"Failed to delete {path}: {e}") from e
        info(f"Deleted file: {p}")
        return True

    async def list_files(self, path: str = ".", recursive: bool = False) -> List[str]:
        base = self.resolve_path(path)
        if not base.exists():
            return []
        if not recursive:
            return sorted(self.relative(p) + ("/" if p.is_dir() else "") for p in base.iterdir())
        files: List[str] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for name in sorted(filenames):
                files.append(self.relative(Path(dirpath) / name))
        return files

    async def create_directory(self, path: str) -> str:
        p = self.resolve_path(path)
        p.mkdir(parents=True, exist_ok=True)
        info(f"Created directory: {p}")
        return str(p)

    async def stat(self, path: str) -> FileStat:
        p = self.resolve_path(path)
        try:
            st = p.stat()
        except OSError as e:
            raise CollaboratorError(f"Failed to stat {path}: {e}") from e
        return FileStat(path=self.relative(p), size=st.st_size, is_dir=p.is_dir())
