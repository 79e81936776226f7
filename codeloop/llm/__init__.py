"""Provider contract, stream event types and the Ollama adapter."""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Union

import httpx

from codeloop.exceptions import LLMAPIError, LLMError
from codeloop.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


class ToolStatus(str, Enum):
    """Tool call lifecycle states."""

    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    REJECTED = "rejected"


TERMINAL_TOOL_STATUSES = frozenset({ToolStatus.SUCCESS, ToolStatus.ERROR, ToolStatus.REJECTED})

# pending/awaiting -> error covers calls skipped by an abort before they ran.
_TOOL_TRANSITIONS: dict[ToolStatus, frozenset[ToolStatus]] = {
    ToolStatus.PENDING: frozenset({ToolStatus.AWAITING_APPROVAL, ToolStatus.RUNNING, ToolStatus.ERROR}),
    ToolStatus.AWAITING_APPROVAL: frozenset({ToolStatus.RUNNING, ToolStatus.REJECTED, ToolStatus.ERROR}),
    ToolStatus.RUNNING: frozenset({ToolStatus.SUCCESS, ToolStatus.ERROR}),
    ToolStatus.SUCCESS: frozenset(),
    ToolStatus.ERROR: frozenset(),
    ToolStatus.REJECTED: frozenset(),
}

PARSE_ERROR_KEY = "_parse_error"
RAW_ARGS_KEY = "_raw_args"


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.PENDING
    result: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TOOL_STATUSES

    @property
    def has_parse_error(self) -> bool:
        return bool(self.arguments.get(PARSE_ERROR_KEY))

    def can_transition(self, status: ToolStatus) -> bool:
        return status in _TOOL_TRANSITIONS[self.status]

    def transition(self, status: ToolStatus) -> None:
        """Advance the status; regressions and skips raise ``ValueError``."""
        if not self.can_transition(status):
            raise ValueError(
                f"Illegal tool status transition for {self.id}: {self.status.value} -> {status.value}"
            )
        self.status = status

    def public_arguments(self) -> dict[str, Any]:
        """Arguments without internal underscore-prefixed markers."""
        return {key: value for key, value in self.arguments.items() if not str(key).startswith("_")}

    def to_provider_dict(self) -> dict[str, Any]:
        """OpenAI-style ``tool_calls`` entry."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.public_arguments(), ensure_ascii=False),
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": dict(self.arguments),
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        raw_status = str(data.get("status") or ToolStatus.PENDING.value)
        try:
            status = ToolStatus(raw_status)
        except ValueError:
            status = ToolStatus.PENDING
        arguments = data.get("arguments")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            arguments=dict(arguments) if isinstance(arguments, dict) else {},
            status=status,
            result=data.get("result"),
            error=data.get("error"),
        )


@dataclass
class Message:
    """A provider-facing conversation message."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_provider_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            entry["tool_calls"] = [tc.to_provider_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            entry["tool_call_id"] = self.tool_call_id
        if self.tool_name:
            entry["tool_name"] = self.tool_name
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        raw_calls = data.get("tool_calls") or []
        return cls(
            role=str(data.get("role", "user")),
            content=data.get("content"),
            tool_calls=[ToolCall.from_dict(item) for item in raw_calls if isinstance(item, dict) and "id" in item],
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            id=str(data.get("id") or uuid.uuid4().hex),
        )


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class LLMResponse:
    """Non-streaming response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


# Stream events. One dataclass per event kind; the parser dispatches on type.


@dataclass(frozen=True)
class TextDelta:
    content: str


@dataclass(frozen=True)
class ReasoningDelta:
    content: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str | None
    name: str | None


@dataclass(frozen=True)
class ToolCallDelta:
    arguments: str = ""
    id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class ToolCallEnd:
    id: str | None = None


@dataclass(frozen=True)
class ToolCallFull:
    tool_call: ToolCall


@dataclass(frozen=True)
class StreamDone:
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamError:
    message: str
    status_code: int | None = None


StreamEvent = Union[
    TextDelta,
    ReasoningDelta,
    ToolCallStart,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallFull,
    StreamDone,
    StreamError,
]


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield decoded stream events, ending with one ``StreamDone`` or ``StreamError``."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    async def close(self) -> None:
        return None


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "qwen3:32b",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 8192,
        api_key: str | None = None,
        timeout: float = 300.0,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            timeout: HTTP timeout in seconds
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": tc.name, "arguments": tc.public_arguments()}}
                    for tc in msg.tool_calls
                ]
            if msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    def _build_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": 65536,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": stream,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _decode_tool_calls(raw_calls: Any) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for tc in raw_calls or []:
            function = tc.get("function", {}) if isinstance(tc, dict) else {}
            arguments = function.get("arguments", {})
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {PARSE_ERROR_KEY: True, RAW_ARGS_KEY: arguments}
            calls.append(ToolCall(
                id=f"ollama_call_{tc.get('id') or uuid.uuid4().hex[:12]}",
                name=str(function.get("name", "")),
                arguments=arguments if isinstance(arguments, dict) else {},
            ))
        return calls

    @staticmethod
    def _usage(data: dict[str, Any]) -> dict[str, int]:
        prompt = int(data.get("prompt_eval_count", 0) or 0)
        completion = int(data.get("eval_count", 0) or 0)
        return {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        }

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=False)

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            data = response.json()
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}")

        message = data.get("message", {})
        return LLMResponse(
            content=message.get("content", "") or "",
            tool_calls=self._decode_tool_calls(message.get("tool_calls")),
            model=self.model,
            usage=self._usage(data),
        )

    async def stream(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as typed events."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=True)

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    yield StreamError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                    return

                accumulated = ""
                collected: list[ToolCall] = []
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug("Skipping undecodable Ollama line", line=line[:200])
                        continue
                    message = chunk.get("message", {}) or {}
                    if message.get("thinking"):
                        yield ReasoningDelta(message["thinking"])
                    if message.get("content"):
                        accumulated += message["content"]
                        yield TextDelta(message["content"])
                    for tc in self._decode_tool_calls(message.get("tool_calls")):
                        collected.append(tc)
                        yield ToolCallFull(tc)
                    if chunk.get("done"):
                        yield StreamDone(
                            content=accumulated,
                            tool_calls=tuple(collected),
                            usage=self._usage(chunk),
                        )
                        return
        except httpx.HTTPError as e:
            yield StreamError(f"Ollama streaming error: {e}")
            return

        yield StreamError("Ollama stream ended without a done marker")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "qwen3:32b",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 8192,
    timeout: float = 300.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (only ``ollama`` ships built in)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: HTTP timeout in seconds

    Returns:
        Configured LLMProvider instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a provider instance.")
