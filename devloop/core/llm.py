from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

import requests
from pydantic import BaseModel

from .config import LLMConfig, llm_config
from .errors import (
    AuthenticationError,
    BadRequestError,
    CompletionError,
    ConfigurationError,
    QuotaExceededError,
    TerminalCompletionError,
    TransientCompletionError,
)
from .logger import debug, error, info, warn

OpenAICompatURL = "/v1/chat/completions"
USER_AGENT = "devloop-agent/1.0"


@dataclass(frozen=True)
class Raw:
    """Completion text that the caller still has to interpret."""
    text: str


@dataclass(frozen=True)
class Structured:
    """Completion the backend already returned as structured data."""
    value: Any


Completion = Union[Raw, Structured]


class CompletionOptions(BaseModel):
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[List[str]] = None
    response_format: Literal["text", "json"] = "text"
    timeout: Optional[float] = None


def classify_http_error(backend: str, status: int, body: str) -> CompletionError:
    """Map an HTTP failure onto the retryable/terminal taxonomy."""
    text = (body or "")[:500]
    message = f"{backend} API error {status}: {text}"
    lowered = text.lower()
    if status == 429 or "insufficient_quota" in lowered or "rate limit" in lowered or "quota" in lowered:
        return QuotaExceededError(message, status_code=status, backend_message=text)
    if status in (401, 403):
        return AuthenticationError(message, status_code=status, backend_message=text)
    if status == 408 or status >= 500:
        return TransientCompletionError(message, status_code=status, backend_message=text)
    return BadRequestError(message, status_code=status, backend_message=text)


class Backend:
    """One completion provider. ``send`` is blocking and runs in a worker thread."""

    name = "backend"
    default_model = ""
    default_base_url = ""
    requires_api_key = True

    def __init__(self, config: LLMConfig):
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.api_key = config.api_key
        self.model = config.model or self.default_model

    def send(self, prompt: str, options: CompletionOptions) -> Any:
        raise NotImplementedError

    def _post(self, url: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: float) -> Any:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT, **headers}
        try:
            resp = requests.post(url, headers=headers, data=json.dumps(payload), timeout=(min(30, timeout), timeout))
        except requests.RequestException as e:
            raise TransientCompletionError(f"{self.name} request failed: {e}") from e
        if resp.status_code >= 400:
            raise classify_http_error(self.name, resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise TransientCompletionError(f"{self.name} returned a non-JSON body: {resp.text[:200]}") from e

    @staticmethod
    def _prune(payload: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in payload.items() if v is not None}


class OpenAICompatBackend(Backend):
    name = "openai"
    default_model = "gpt-4o"
    default_base_url = "https://api.openai.com"

    def send(self, prompt: str, options: CompletionOptions) -> Any:
        payload = self._prune({
            "model": options.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "top_p": options.top_p,
            "frequency_penalty": options.frequency_penalty,
            "presence_penalty": options.presence_penalty,
            "stop": options.stop,
        })
        # JSON mode only where the compatible endpoint supports it
        if options.response_format == "json" and self.config.force_json:
            payload["response_format"] = {"type": "json_object"}
        data = self._post(
            f"{self.base_url}{OpenAICompatURL}",
            {"Authorization": f"Bearer {self.api_key}"},
            payload,
            options.timeout,
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise TransientCompletionError("Invalid OpenAI response: missing choices or content.") from e
        if not content:
            raise TransientCompletionError("Invalid OpenAI response: empty content.")
        return content


class DeepSeekBackend(OpenAICompatBackend):
    name = "deepseek"
    default_model = "deepseek-chat"
    default_base_url = "https://api.deepseek.com"


class AnthropicBackend(Backend):
    name = "anthropic"
    default_model = "claude-3-opus-20240229"
    default_base_url = "https://api.anthropic.com"

    def send(self, prompt: str, options: CompletionOptions) -> Any:
        payload = self._prune({
            "model": options.model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
            "top_p": options.top_p,
            "top_k": options.top_k,
            "stop_sequences": options.stop,
        })
        data = self._post(
            f"{self.base_url}/v1/messages",
            {"x-api-key": self.api_key or "", "anthropic-version": "2023-06-01"},
            payload,
            options.timeout,
        )
        blocks = data.get("content") if isinstance(data, dict) else None
        if not blocks:
            raise TransientCompletionError("Received empty or invalid response from Anthropic API")
        return "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")


class OllamaBackend(Backend):
    name = "ollama"
    default_model = "llama3"
    default_base_url = "http://localhost:11434"
    requires_api_key = False

    def send(self, prompt: str, options: CompletionOptions) -> Any:
        payload: Dict[str, Any] = {
            "model": options.model,
            "prompt": prompt,
            "stream": False,
            "options": self._prune({
                "num_predict": options.max_tokens,
                "temperature": options.temperature,
                "top_p": options.top_p,
                "top_k": options.top_k,
                "stop": options.stop,
            }),
        }
        if options.response_format == "json":
            payload["format"] = "json"
        data = self._post(f"{self.base_url}/api/generate", {}, payload, options.timeout)
        if not isinstance(data, dict) or not data.get("response"):
            raise TransientCompletionError("Invalid Ollama response: missing response field.")
        return data["response"]


Responder = Callable[[str, CompletionOptions], Any]


class MockBackend(Backend):
    """
    Offline backend. Scripted entries are consumed in order; an entry may be a
    string, a structured value, an exception instance (raised) or a callable.
    Without a script a minimal canned conversation keeps the loop running.
    """

    name = "mock"
    default_model = "mock"
    requires_api_key = False

    def __init__(self, config: LLMConfig | None = None, script: Optional[List[Any]] = None,
                 responder: Optional[Responder] = None):
        super().__init__(config or LLMConfig(provider="mock", mock_mode=True))
        self.script: List[Any] = list(script or [])
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    def push(self, *entries: Any) -> None:
        self.script.extend(entries)

    def send(self, prompt: str, options: CompletionOptions) -> Any:
        self.calls.append({"prompt": prompt, "options": options})
        if self.script:
            entry = self.script.pop(0)
        elif self.responder is not None:
            entry = self.responder
        else:
            entry = self._canned
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            return entry(prompt, options)
        return entry

    @staticmethod
    def _canned(prompt: str, options: CompletionOptions) -> Any:
        content = prompt.lower()
        if "create a comprehensive, detailed plan" in content:
            return json.dumps({
                "title": "Demo plan",
                "description": "Scaffold the project and implement the entry point",
                "steps": [
                    {"id": "step-1", "title": "Create project skeleton", "description": "Create README.md",
                     "type": "implementation", "dependencies": [], "estimatedComplexity": "low"},
                    {"id": "step-2", "title": "Implement entry point", "description": "Create main.py",
                     "type": "implementation", "dependencies": ["step-1"], "estimatedComplexity": "medium"},
                ],
            })
        if '"files"' in content:
            return json.dumps({"files": [{"path": "README.md", "code": "# demo\n", "description": "readme"}],
                               "explanation": "mock output"})
        return json.dumps({"result": "ok"})


_BACKENDS = {
    "openai": OpenAICompatBackend,
    "deepseek": DeepSeekBackend,
    "claude": AnthropicBackend,
    "anthropic": AnthropicBackend,
    "ollama": OllamaBackend,
    "mock": MockBackend,
}

SleepFn = Callable[[float], Awaitable[None]]


class CompletionService:
    """
    Uniform async ``complete(prompt, options)`` over one backend.

    Transient failures are retried ``retries`` times with exponential backoff
    (``retry_delay * 2 ** attempt``). Terminal failures surface at once; a
    quota error additionally flips ``quota_exhausted`` so callers switch to
    their non-completion fallbacks for the rest of the run.
    """

    def __init__(self, backend: Backend, config: LLMConfig | None = None, sleep: SleepFn | None = None):
        self.config = config or backend.config
        self.backend = backend
        self.retries = self.config.retries
        self.retry_delay = self.config.retry_delay
        self.quota_exhausted = False
        self._sleep = sleep or asyncio.sleep

    @property
    def provider(self) -> str:
        return self.backend.name

    @property
    def available(self) -> bool:
        return not self.quota_exhausted

    def _resolve(self, options: CompletionOptions | None) -> CompletionOptions:
        opts = options or CompletionOptions()
        return opts.model_copy(update={
            "model": opts.model or self.backend.model,
            "max_tokens": opts.max_tokens or self.config.max_tokens,
            "temperature": self.config.temperature if opts.temperature is None else opts.temperature,
            "timeout": opts.timeout or self.config.timeout,
        })

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> Completion:
        opts = self._resolve(options)
        if self.quota_exhausted:
            raise QuotaExceededError(f"{self.provider} quota exhausted earlier in this run; completions disabled")

        last_err: CompletionError | None = None
        for attempt in range(self.retries + 1):
            debug(f"completion -> {self.provider} model={opts.model} prompt={len(prompt)} chars attempt={attempt}")
            try:
                value = await asyncio.wait_for(
                    asyncio.to_thread(self.backend.send, prompt, opts), timeout=opts.timeout
                )
            except TerminalCompletionError as e:
                if isinstance(e, QuotaExceededError):
                    self.quota_exhausted = True
                    error(f"{self.provider} quota/rate limit hit, disabling completions for this run: {e}")
                else:
                    error(f"{self.provider} rejected the request: {e}")
                raise
            except asyncio.TimeoutError:
                last_err = TransientCompletionError(f"{self.provider} request timed out after {opts.timeout}s")
            except TransientCompletionError as e:
                last_err = e
            except requests.RequestException as e:
                last_err = TransientCompletionError(f"{self.provider} request failed: {e}")
            else:
                if isinstance(value, str):
                    return Raw(value)
                return Structured(value)

            if attempt < self.retries:
                wait_s = self.retry_delay * (2 ** attempt)
                warn(f"Completion failed, retrying in {wait_s:.2f}s ({attempt + 1}/{self.retries}): {last_err}")
                await self._sleep(wait_s)

        error(f"Completion failed after {self.retries} retries: {last_err}")
        raise last_err

    async def complete_text(self, prompt: str, options: CompletionOptions | None = None) -> str:
        completion = await self.complete(prompt, options)
        if isinstance(completion, Raw):
            return completion.text
        if isinstance(completion.value, str):
            return completion.value
        return json.dumps(completion.value, ensure_ascii=False)


def create_backend(config: LLMConfig | None = None) -> Backend:
    config = config or llm_config
    provider = "mock" if config.mock_mode else config.provider.lower()
    backend_cls = _BACKENDS.get(provider)
    if backend_cls is None:
        raise ConfigurationError(
            f'Unsupported LLM provider: "{config.provider}". Supported providers: {", ".join(sorted(_BACKENDS))}.'
        )
    if backend_cls.requires_api_key and not config.api_key:
        raise ConfigurationError(
            f"LLM provider '{provider}' needs LLM_API_KEY; set it or enable MOCK_MODE=true."
        )
    return backend_cls(config)


def create_completion_service(config: LLMConfig | None = None) -> CompletionService:
    config = config or llm_config
    backend = create_backend(config)
    if isinstance(backend, MockBackend):
        warn("LLM is in mock mode and returns canned demo output. Configure LLM_API_KEY for real calls.")
    info(f"Completion service ready: provider={backend.name} model={backend.model}")
    return CompletionService(backend, config)
