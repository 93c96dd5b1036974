from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal, Protocol, Sequence, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
Role = Literal["system", "user", "assistant"]

_DEFAULT_TIMEOUT: int = 120
ACKNOWLEDGEMENT_TEXT = "ok"
FILLER_TEXT: dict[str, str] = {"user": "continue", "assistant": "ok"}


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatTurn:
    role: Role
    text: str


@dataclass(frozen=True)
class ToolConfig:
    """Identity and call settings of one generative tool (tech stack, compiler, ...).

    ``tool_id`` is part of every cache key, so it must stay stable across runs.
    """

    tool_id: str
    model_name: str
    temperature: float = 0.0
    timeout: int = _DEFAULT_TIMEOUT
    supports_system_role: bool = True
    forbid_consecutive_roles: bool = False


@dataclass(frozen=True)
class NormalizedMessages:
    tool: ToolConfig
    turns: tuple[ChatTurn, ...]


@dataclass(frozen=True)
class EndpointReply:
    reply_texts: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    status: Literal["ok", "error"] = "ok"
    error: str | None = None


class GenerativeEndpoint(Protocol):
    """What the runner needs from a provider adapter."""

    def prepare_messages(
        self,
        tool: ToolConfig,
        role_context: str,
        prior_turns: Sequence[ChatTurn],
    ) -> NormalizedMessages:
        ...

    def send(self, messages: NormalizedMessages) -> EndpointReply:
        ...


def normalize_turns(
    role_context: str,
    prior_turns: Sequence[ChatTurn],
    *,
    supports_system_role: bool = True,
    forbid_consecutive_roles: bool = False,
) -> tuple[ChatTurn, ...]:
    """Map a role primer plus conversation onto what a provider accepts.

    Without a native system role, the primer becomes a user turn followed by
    an assistant acknowledgement, and later system turns are sent as user
    turns. When the provider forbids consecutive same-role turns a filler turn
    of the opposite role is inserted between them.
    """
    turns: list[ChatTurn] = []

    def _append(turn: ChatTurn) -> None:
        if forbid_consecutive_roles and turns and turns[-1].role == turn.role and turn.role != "system":
            filler_role: Role = "assistant" if turn.role == "user" else "user"
            turns.append(ChatTurn(role=filler_role, text=FILLER_TEXT[filler_role]))
        turns.append(turn)

    if role_context.strip():
        if supports_system_role:
            _append(ChatTurn(role="system", text=role_context))
        else:
            _append(ChatTurn(role="user", text=role_context))
            _append(ChatTurn(role="assistant", text=ACKNOWLEDGEMENT_TEXT))

    for turn in prior_turns:
        if turn.role == "system" and not supports_system_role:
            turn = ChatTurn(role="user", text=turn.text)
        _append(turn)
    return tuple(turns)


# ---------------------------------------------------------------------------
# OpenAI adapter
# ---------------------------------------------------------------------------

def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional directory holding the .env file (cwd if not given).

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to call the generative endpoint")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with a validated API key.

    Transport retries are disabled: the runner owns the attempt budget, and a
    failed call has to count against it.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(model=model_name, temperature=temperature, timeout=timeout, max_retries=0)


def _to_langchain_messages(turns: Sequence[ChatTurn]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for turn in turns:
        if turn.role == "system":
            converted.append(SystemMessage(content=turn.text))
        elif turn.role == "user":
            converted.append(HumanMessage(content=turn.text))
        else:
            converted.append(AIMessage(content=turn.text))
    return converted


def extract_reply_text(response: Any) -> str:
    """Pull the text out of a chat model response (string or content-block list)."""
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "".join(parts)
    raise RuntimeError(f"Unsupported response content type: {type(content).__name__}")


class OpenAIChatEndpoint:
    """Generative endpoint backed by ``langchain_openai.ChatOpenAI`` in JSON mode."""

    def __init__(
        self,
        *,
        repo_root: Path | None = None,
        model_factory: Callable[..., ChatOpenAI] | None = None,
    ) -> None:
        self.repo_root = repo_root
        self._model_factory = model_factory if model_factory is not None else get_chat_model
        self._models: dict[tuple[str, float, int], SupportsInvoke] = {}
        self._models_lock = threading.Lock()

    def prepare_messages(
        self,
        tool: ToolConfig,
        role_context: str,
        prior_turns: Sequence[ChatTurn],
    ) -> NormalizedMessages:
        turns = normalize_turns(
            role_context,
            prior_turns,
            supports_system_role=tool.supports_system_role,
            forbid_consecutive_roles=tool.forbid_consecutive_roles,
        )
        return NormalizedMessages(tool=tool, turns=turns)

    def _runnable_for(self, tool: ToolConfig) -> SupportsInvoke:
        key = (tool.model_name, tool.temperature, tool.timeout)
        with self._models_lock:
            runnable = self._models.get(key)
            if runnable is None:
                model = self._model_factory(
                    model_name=tool.model_name,
                    temperature=tool.temperature,
                    timeout=tool.timeout,
                    repo_root=self.repo_root,
                )
                runnable = model.bind(response_format={"type": "json_object"})
                self._models[key] = runnable
        return runnable

    def send(self, messages: NormalizedMessages) -> EndpointReply:
        runnable = self._runnable_for(messages.tool)
        response = runnable.invoke(_to_langchain_messages(messages.turns))
        usage = getattr(response, "usage_metadata", None) or {}
        text = extract_reply_text(response)
        logger.debug(
            "%s replied (%s input / %s output tokens)",
            messages.tool.tool_id,
            usage.get("input_tokens", 0),
            usage.get("output_tokens", 0),
        )
        return EndpointReply(
            reply_texts=[text],
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
        )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from model output text.

    Tries, in order: the whole body, a fenced ```json block, and the span
    between the first ``{`` and the last ``}``.

    Raises:
        RuntimeError: If no JSON object can be extracted from the text.
    """
    body = text.strip()
    if not body:
        raise RuntimeError("Model returned empty output; expected a JSON object")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    candidates = []
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        candidates.append(fenced.group(1))
    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end > start:
        candidates.append(body[start : end + 1])

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload

    preview = body[:220].replace("\n", " ")
    raise RuntimeError(f"Model output did not contain a JSON object: {preview}")


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Validate a parsed payload (dict or model instance) against a pydantic schema.

    Raises:
        RuntimeError: If the payload has an unsupported type or fails validation.
    """
    if isinstance(raw_output, schema):
        return raw_output
    if isinstance(raw_output, BaseModel):
        candidate = raw_output.model_dump(mode="json", by_alias=True)
    elif isinstance(raw_output, dict):
        candidate = raw_output
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(raw_output).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc
