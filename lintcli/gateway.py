"""Chat endpoint client: URL canonicalisation, completion call, reply normalisation."""

import json
import logging
import uuid
from dataclasses import dataclass, field

from .tools import TOOLS

DEFAULT_CHAT_URL = "http://localhost:11434/ollama/api/chat"
REQUEST_TIMEOUT = 120  # seconds
PROVIDER_PREFIX = "ollama_chat/"
_CHAT_SUFFIX = "/api/chat"

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    """A request from the model to run one named tool."""

    id: str
    name: str
    parameters: dict = field(default_factory=dict)

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.parameters),
            },
        }


@dataclass
class GatewayReply:
    """Normalised model reply: final text, or one or more tool calls."""

    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_message(self) -> dict:
        if self.tool_calls:
            return {
                "role": "assistant",
                "content": "",
                "tool_calls": [tc.to_wire() for tc in self.tool_calls],
            }
        return {"role": "assistant", "content": self.content or ""}


def build_chat_url(raw_url: str | None) -> str:
    """Map the accepted base-URL spellings onto one canonical chat endpoint.

    ``http://h``, ``http://h/ollama/api`` and ``http://h/ollama/api/chat/``
    all converge on ``http://h/ollama/api/chat``; a bare ``.../api`` gets
    ``/chat`` appended.
    """
    if not raw_url:
        return DEFAULT_CHAT_URL
    trimmed = raw_url.rstrip("/")
    if trimmed.endswith(_CHAT_SUFFIX):
        return trimmed
    if trimmed.endswith("/api"):
        return f"{trimmed}/chat"
    return f"{trimmed}/ollama{_CHAT_SUFFIX}"


def _field(obj, key):
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _new_call_id(prefix: str = "call") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def parse_tool_arguments(function) -> dict:
    """Extract call arguments from either `parameters` or `arguments`.

    `arguments` may be JSON text or an already-decoded mapping; anything
    unparseable becomes an empty dict.
    """
    params = _field(function, "parameters")
    if isinstance(params, dict):
        return params
    raw = _field(function, "arguments")
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("undecodable tool arguments: %r", raw[:200])
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _coerce_tool_call(raw) -> ToolCall:
    function = _field(raw, "function") or {}
    name = _field(function, "name")
    return ToolCall(
        id=_field(raw, "id") or _new_call_id(),
        name=name if isinstance(name, str) else "",
        parameters=parse_tool_arguments(function),
    )


def extract_tool_from_text(content) -> ToolCall | None:
    """Recover a tool call that the model serialised as JSON text.

    Only a content string that is, as a whole, a JSON object carrying a
    string ``name`` and a mapping ``parameters`` qualifies.
    """
    if not isinstance(content, str):
        return None
    text = content.strip()
    if not (text.startswith("{") and text.endswith("}")):
        return None
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None
    name = obj.get("name")
    params = obj.get("parameters")
    if not isinstance(name, str) or not name or not isinstance(params, dict):
        return None
    return ToolCall(id=_new_call_id("call_text"), name=name, parameters=params)


def normalize_reply(message) -> GatewayReply:
    """Turn a raw assistant message (object or dict) into a GatewayReply."""
    if message is None:
        return GatewayReply(content="Error: empty response from model")

    raw_calls = _field(message, "tool_calls") or []
    calls = [_coerce_tool_call(tc) for tc in raw_calls]
    if calls:
        return GatewayReply(tool_calls=calls)

    content = _field(message, "content") or ""
    fallback = extract_tool_from_text(content)
    if fallback is not None:
        logger.debug("recovered tool call %s from text content", fallback.name)
        return GatewayReply(tool_calls=[fallback])
    return GatewayReply(content=content)


def resolve_tool_calls(reply: GatewayReply) -> list[ToolCall]:
    """Tool calls of a reply, re-checking text content when none were declared."""
    if reply.tool_calls:
        return reply.tool_calls
    fallback = extract_tool_from_text(reply.content)
    return [fallback] if fallback is not None else []


async def complete(
    messages: list,
    model: str,
    api_url: str | None = None,
    api_key: str | None = None,
) -> GatewayReply:
    """Send the conversation plus the tool schema and normalise the reply.

    Transport failures never raise: they come back as a synthetic
    assistant reply whose content describes the error.
    """
    import litellm

    litellm.suppress_debug_info = True

    chat_url = build_chat_url(api_url)
    model_str = model if model.startswith(PROVIDER_PREFIX) else PROVIDER_PREFIX + model
    kwargs = dict(
        model=model_str,
        messages=messages,
        tools=TOOLS,
        tool_choice="auto",
        stream=False,
        api_base=chat_url[: -len(_CHAT_SUFFIX)],
        timeout=REQUEST_TIMEOUT,
        drop_params=True,
    )
    if api_key:
        kwargs["api_key"] = api_key

    logger.debug("POST %s model=%s messages=%d", chat_url, model, len(messages))
    try:
        response = await litellm.acompletion(**kwargs)
    except Exception as e:
        logger.debug("chat request failed", exc_info=True)
        return GatewayReply(content=f"Error: {e}")

    choices = getattr(response, "choices", None)
    if not choices:
        return GatewayReply(content="Error: empty response from model")
    return normalize_reply(choices[0].message)
