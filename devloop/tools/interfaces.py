from __future__ import annotations
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel


class SearchResult(BaseModel):
    url: str
    title: str = ""
    snippet: str = ""


class PageContent(BaseModel):
    url: str
    content: str = ""
    text_content: str = ""
    title: str = ""
    status_code: int = 0


class FileStat(BaseModel):
    path: str
    size: int
    is_dir: bool = False


@runtime_checkable
class Browser(Protocol):
    async def search(self, query: str, **opts: Any) -> List[SearchResult]: ...

    async def visit_url(self, url: str, **opts: Any) -> PageContent: ...


@runtime_checkable
class FileSystem(Protocol):
    async def read_file(self, path: str) -> Optional[str]: ...

    async def write_file(self, path: str, content: str, overwrite: bool = True) -> str: ...

    async def delete_file(self, path: str) -> bool: ...

    async def list_files(self, path: str = ".", recursive: bool = False) -> List[str]: ...

    async def create_directory(self, path: str) -> str: ...

    async def stat(self, path: str) -> FileStat: ...


@runtime_checkable
class ComputerControl(Protocol):
    async def execute_command(self, command: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]: ...

    async def take_screenshot(self, region: Optional[Dict[str, int]] = None) -> Any: ...

    async def send_input(self, input_type: str, value: str, options: Optional[Dict[str, Any]] = None) -> Any: ...

    async def control_app(self, app_action: str, app_name: str, options: Optional[Dict[str, Any]] = None) -> Any: ...
