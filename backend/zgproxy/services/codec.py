"""
Translation between the OpenAI chat-completion dialect and the 0G backend dialect.

0G backends are not guaranteed to answer in a single shape, so responses (and
streamed deltas, see ``DELTA_SHAPES``) are decoded by trying an ordered list of
shape matchers. The first matcher whose predicate accepts the payload wins and
its extractor alone produces the result.
"""
import json
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from zgproxy.schemas import (
    ChatMessage,
    Choice,
    CompletionRequest,
    CompletionResponse,
    ResponseMessage,
    ToolCall,
    Usage,
)

RESPONSE_ID_PREFIX = "chatcmpl-"

# Optional request fields copied verbatim when the client sets them.
PASSTHROUGH_FIELDS = (
    "temperature",
    "max_tokens",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "stop",
    "tool_choice",
)


@dataclass
class DecodedMessage:
    content: Optional[str]
    tool_calls: Optional[List[ToolCall]] = None
    finish_reason: str = "stop"


@dataclass(frozen=True)
class Shape:
    name: str
    matches: Callable[[Any], bool]
    extract: Callable[[Any], Any]


def probe(shapes: Sequence[Shape], payload: Any) -> tuple[Optional[str], Any]:
    """Return ``(shape name, extracted value)`` for the first matching shape."""
    for shape in shapes:
        if shape.matches(payload):
            return shape.name, shape.extract(payload)
    return None, None


def _first_choice(payload: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def _non_empty_str_field(field: str) -> Callable[[Any], bool]:
    def matches(payload: Any) -> bool:
        return isinstance(payload, dict) and isinstance(payload.get(field), str) and bool(payload[field])

    return matches


def _parse_tool_calls(raw: Any) -> Optional[List[ToolCall]]:
    if not isinstance(raw, list) or not raw:
        return None
    calls: List[ToolCall] = []
    for idx, row in enumerate(raw):
        if not isinstance(row, dict):
            continue
        fn = row.get("function") if isinstance(row.get("function"), dict) else {}
        try:
            calls.append(
                ToolCall(
                    id=str(row.get("id") or f"call_{idx}"),
                    function={"name": fn.get("name") or row.get("name") or "", "arguments": fn.get("arguments")},
                )
            )
        except ValidationError:
            continue
    return calls or None


def _extract_choice_message(payload: Any) -> DecodedMessage:
    choice = _first_choice(payload) or {}
    message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
    content = message.get("content") or choice.get("text") or ""
    if not isinstance(content, str):
        content = str(content)
    tool_calls = _parse_tool_calls(message.get("tool_calls"))
    if tool_calls and not content:
        content = None
    return DecodedMessage(
        content=content,
        tool_calls=tool_calls,
        finish_reason=choice.get("finish_reason") or "stop",
    )


RESPONSE_SHAPES: tuple[Shape, ...] = (
    Shape("choices", lambda p: _first_choice(p) is not None, _extract_choice_message),
    Shape("response", _non_empty_str_field("response"), lambda p: DecodedMessage(content=p["response"])),
    Shape("content", _non_empty_str_field("content"), lambda p: DecodedMessage(content=p["content"])),
    Shape("raw", lambda p: isinstance(p, str), lambda p: DecodedMessage(content=p)),
)


def _choice_delta(payload: Any) -> Dict[str, Any]:
    return dict((_first_choice(payload) or {}).get("delta") or {})


DELTA_SHAPES: tuple[Shape, ...] = (
    Shape(
        "choices",
        lambda p: isinstance((_first_choice(p) or {}).get("delta"), dict),
        _choice_delta,
    ),
    Shape("delta", lambda p: isinstance(p, dict) and isinstance(p.get("delta"), dict), lambda p: dict(p["delta"])),
    Shape("content", lambda p: isinstance(p, dict) and isinstance(p.get("content"), str), lambda p: {"content": p["content"]}),
    Shape("raw", lambda p: isinstance(p, str), lambda p: {"content": p}),
)


def delta_finish_reason(payload: Any) -> Optional[str]:
    choice = _first_choice(payload)
    if choice is not None:
        return choice.get("finish_reason")
    if isinstance(payload, dict):
        return payload.get("finish_reason")
    return None


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters, rounded up.

    This is a heuristic, not a tokenizer; 0G backends report no usage.
    """
    return math.ceil(len(text) / 4)


def new_completion_id() -> str:
    return f"{RESPONSE_ID_PREFIX}{uuid.uuid4().hex}"


class DialectCodec:
    """Stateless mapping between OpenAI (A) and 0G (B) request/response documents."""

    def encode_request(self, req: CompletionRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "messages": [self._encode_message(m) for m in req.messages],
            "model": req.model,
        }
        for field in PASSTHROUGH_FIELDS:
            value = getattr(req, field)
            if value is not None:
                body[field] = value
        if req.tools is not None:
            body["tools"] = [t.model_dump(exclude_unset=True) for t in req.tools]
        return body

    @staticmethod
    def _encode_message(msg: ChatMessage) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.tool_calls:
            out["tool_calls"] = [tc.model_dump() for tc in msg.tool_calls]
        if msg.tool_call_id:
            out["tool_call_id"] = msg.tool_call_id
        if msg.name:
            out["name"] = msg.name
        return out

    def decode_request(self, body: Dict[str, Any]) -> CompletionRequest:
        """Map a 0G request document back to the OpenAI dialect."""
        fields = {k: body[k] for k in PASSTHROUGH_FIELDS if body.get(k) is not None}
        if body.get("tools") is not None:
            fields["tools"] = body["tools"]
        return CompletionRequest(model=body["model"], messages=body["messages"], **fields)

    def decode_message(self, payload: Any) -> DecodedMessage:
        name, decoded = probe(RESPONSE_SHAPES, payload)
        if name is None:
            return DecodedMessage(content="")
        return decoded

    def decode_response(
        self,
        payload: Any,
        model: str,
        request_messages: Sequence[ChatMessage],
    ) -> CompletionResponse:
        decoded = self.decode_message(payload)

        prompt_tokens = estimate_tokens(" ".join(m.content or "" for m in request_messages))
        completion_tokens = estimate_tokens(decoded.content or "")
        if decoded.tool_calls:
            serialized = json.dumps(
                [tc.model_dump() for tc in decoded.tool_calls],
                separators=(",", ":"),
                ensure_ascii=False,
            )
            completion_tokens += estimate_tokens(serialized)

        backend_id = payload.get("id") if isinstance(payload, dict) else None
        message = ResponseMessage(content=decoded.content, tool_calls=decoded.tool_calls)
        return CompletionResponse(
            id=str(backend_id) if backend_id else new_completion_id(),
            created=int(time.time()),
            model=model,
            choices=[Choice(index=0, message=message, finish_reason=decoded.finish_reason)],
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )
