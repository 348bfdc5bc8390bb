"""
NDJSON -> SSE reframing for streamed chat completions.

The backend writes one JSON record per line, but the network delivers those
lines in arbitrary chunks. StreamReframer keeps the partial trailing line of
each chunk until its newline arrives and emits one SSE frame per record.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, AsyncGenerator, Iterable

from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from ollabridge.adapters.openai_compat.mapper import to_stream_frame
from ollabridge.core.errors import BackendStreamError
from ollabridge.core.models import BackendChatRecord
from ollabridge.util.logger import get_logger

logger = get_logger("stream")

_LOG_LINE_PREVIEW_CHARS = 200


def _sse_data_chunk(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _stream_done_sse_chunk() -> bytes:
    return b"data: [DONE]\n\n"


class StreamReframer:
    """Per-stream state: partial-line buffer plus first-frame marker."""

    def __init__(self, *, request_id: str, model: str) -> None:
        self.request_id = request_id
        self.model = model
        self.first = True
        self.finished = False
        self.frames_emitted = 0
        self.lines_skipped = 0
        self._buffer = ""
        # utf-8 多字节字符可能被拆在两个 chunk 之间
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> list[bytes]:
        if self.finished or not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._process_lines(lines)

    def finish(self) -> list[bytes]:
        """Flush at end of input. Emits the sentinel unless a done record already did."""
        if self.finished:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        out = self._process_lines([tail])
        if not self.finished:
            logger.info("chat stream ended without done record request_id=%s", self.request_id)
            self.finished = True
            out.append(_stream_done_sse_chunk())
        return out

    def _process_lines(self, lines: Iterable[str]) -> list[bytes]:
        out: list[bytes] = []
        for raw_line in lines:
            line = raw_line.rstrip("\r")
            if not line.strip():
                continue
            record = self._parse_record(line)
            if record is None:
                continue
            frame = to_stream_frame(record, self.request_id, self.model, first=self.first)
            self.first = False
            self.frames_emitted += 1
            out.append(_sse_data_chunk(frame.to_wire()))
            if record.done:
                self.finished = True
                self._buffer = ""
                out.append(_stream_done_sse_chunk())
                break
        return out

    def _parse_record(self, line: str) -> BackendChatRecord | None:
        try:
            payload = json.loads(line)
            return BackendChatRecord.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as exc:
            self.lines_skipped += 1
            logger.warning(
                "skip malformed backend stream line request_id=%s error=%s line=%r",
                self.request_id,
                exc.__class__.__name__,
                line[:_LOG_LINE_PREVIEW_CHARS],
            )
            return None


async def reframe_backend_stream(
    chunks: AsyncGenerator[bytes, None],
    *,
    request_id: str,
    model: str,
) -> AsyncGenerator[bytes, None]:
    reframer = StreamReframer(request_id=request_id, model=model)
    try:
        async for chunk in chunks:
            for frame in reframer.feed(chunk):
                yield frame
            if reframer.finished:
                break
        else:
            for frame in reframer.finish():
                yield frame
    except BackendStreamError as exc:
        # 流中断时不补发 [DONE]，直接关闭连接
        logger.error("chat stream backend failure request_id=%s error=%s", request_id, exc)
        return
    finally:
        await chunks.aclose()
    logger.info(
        "chat stream done request_id=%s frames=%d skipped_lines=%d",
        request_id,
        reframer.frames_emitted,
        reframer.lines_skipped,
    )


def _build_streaming_response(generator: AsyncGenerator[bytes, None]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
