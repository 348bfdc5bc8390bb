"""OpenAI <-> Ollama model mapping."""

from __future__ import annotations

import re
import time
import uuid
from datetime import datetime

from ollabridge.config.settings import settings
from ollabridge.core.models import (
    AssistantMessage,
    BackendChatRecord,
    BackendChatRequest,
    BackendModelList,
    BackendOptions,
    ChatChoice,
    ChatMessage,
    PublicChatRequest,
    PublicChatResponse,
    PublicChatStreamFrame,
    PublicModel,
    PublicModelList,
    StreamChoice,
    StreamDelta,
    Usage,
)
from ollabridge.util.logger import logger


REQUEST_ID_PREFIX = "chatcmpl-"
_REQUEST_ID_HEX_CHARS = 29

# public name -> backend option name
_SAMPLING_OPTION_NAMES: dict[str, str] = {
    "temperature": "temperature",
    "top_p": "top_p",
    "max_tokens": "num_predict",
    "frequency_penalty": "frequency_penalty",
    "presence_penalty": "presence_penalty",
}

# Ollama emits nanosecond fractions and either Z or a numeric offset.
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2})(?:\.\d+)?(?P<tz>[Zz]|[+-]\d{2}:?\d{2})?$"
)


def make_request_id() -> str:
    return f"{REQUEST_ID_PREFIX}{uuid.uuid4().hex[:_REQUEST_ID_HEX_CHARS]}"


def parse_created_at(value: str) -> int:
    """Convert a backend RFC 3339 timestamp to whole epoch seconds.

    Fractional seconds are dropped, which equals flooring. A timestamp
    without an offset is read as UTC. Anything unparseable maps to now.
    """
    matched = _TIMESTAMP_RE.match((value or "").strip())
    if not matched:
        logger.debug("unparseable backend timestamp value=%r fallback=now", value)
        return int(time.time())
    base = matched.group("base").replace(" ", "T").replace("t", "T")
    tz = matched.group("tz") or "+00:00"
    if tz in {"Z", "z"}:
        tz = "+00:00"
    elif ":" not in tz:
        tz = f"{tz[:3]}:{tz[3:]}"
    try:
        return int(datetime.fromisoformat(f"{base}{tz}").timestamp())
    except ValueError:
        logger.debug("invalid backend timestamp value=%r fallback=now", value)
        return int(time.time())


def to_backend_chat(req: PublicChatRequest) -> BackendChatRequest:
    options = {
        backend_name: getattr(req, public_name)
        for public_name, backend_name in _SAMPLING_OPTION_NAMES.items()
        if getattr(req, public_name) is not None
    }
    return BackendChatRequest(
        model=req.model,
        messages=[ChatMessage(role=msg.role, content=msg.content) for msg in req.messages],
        stream=bool(req.stream),
        options=BackendOptions(**options) if options else None,
    )


def _finish_reason(record: BackendChatRecord) -> str | None:
    if not record.done:
        return None
    # Ollama reports "length" when num_predict cut the reply short
    if record.done_reason == "length":
        return "length"
    return "stop"


def to_chat_response(record: BackendChatRecord, request_id: str, model: str) -> PublicChatResponse:
    prompt_tokens = record.prompt_eval_count or 0
    completion_tokens = record.eval_count or 0
    return PublicChatResponse(
        id=request_id,
        created=parse_created_at(record.created_at),
        model=model,
        choices=[
            ChatChoice(
                index=0,
                message=AssistantMessage(content=record.message.content),
                finish_reason=_finish_reason(record),
            )
        ],
        usage=Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def to_stream_frame(record: BackendChatRecord, request_id: str, model: str, first: bool) -> PublicChatStreamFrame:
    if first:
        delta = StreamDelta(role="assistant", content=record.message.content)
    else:
        delta = StreamDelta(content=record.message.content)
    return PublicChatStreamFrame(
        id=request_id,
        created=parse_created_at(record.created_at),
        model=model,
        choices=[StreamChoice(index=0, delta=delta, finish_reason=_finish_reason(record))],
    )


def to_model_list(listing: BackendModelList) -> PublicModelList:
    return PublicModelList(
        data=[
            PublicModel(
                id=item.name,
                created=parse_created_at(item.modified_at),
                owned_by=settings.model_owner,
            )
            for item in listing.models
        ]
    )
