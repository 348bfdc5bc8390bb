import asyncio
import json

import pytest

from ollabridge.adapters.openai_compat.stream_utils import StreamReframer, reframe_backend_stream
from ollabridge.core.errors import BackendStreamError

DONE = "[DONE]"


def _record(content: str, done: bool = False, **extra) -> str:
    payload = {
        "model": "llama3",
        "created_at": "2024-05-01T12:34:56.5Z",
        "message": {"role": "assistant", "content": content},
        "done": done,
    }
    payload.update(extra)
    return json.dumps(payload, ensure_ascii=False)


def _ndjson(*lines: str) -> bytes:
    return "".join(f"{line}\n" for line in lines).encode("utf-8")


def _decode(out: list[bytes]) -> list:
    events = []
    for raw in out:
        text = raw.decode("utf-8")
        assert text.startswith("data: ")
        assert text.endswith("\n\n")
        body = text[len("data: ") : -2]
        events.append(DONE if body == DONE else json.loads(body))
    return events


def _run(chunks: list[bytes]) -> list[bytes]:
    reframer = StreamReframer(request_id="chatcmpl-test", model="llama3")
    out: list[bytes] = []
    for chunk in chunks:
        out.extend(reframer.feed(chunk))
    out.extend(reframer.finish())
    return out


def _standard_body() -> bytes:
    return _ndjson(
        _record("Hé"),
        _record("llo, "),
        _record("世界 🌍"),
        _record("", done=True, prompt_eval_count=3, eval_count=4),
    )


def test_first_frame_carries_role_and_later_frames_do_not():
    events = _decode(_run([_standard_body()]))

    assert events[0]["choices"][0]["delta"] == {"role": "assistant", "content": "Hé"}
    for event in events[1:-1]:
        assert "role" not in event["choices"][0]["delta"]
    assert events[1]["choices"][0]["delta"] == {"content": "llo, "}


def test_frames_share_request_id_and_model():
    events = _decode(_run([_standard_body()]))
    frames = [event for event in events if event != DONE]

    assert {frame["id"] for frame in frames} == {"chatcmpl-test"}
    assert {frame["model"] for frame in frames} == {"llama3"}
    assert {frame["object"] for frame in frames} == {"chat.completion.chunk"}


def test_only_terminal_frame_has_finish_reason():
    events = _decode(_run([_standard_body()]))
    frames = [event for event in events if event != DONE]

    assert [frame["choices"][0]["finish_reason"] for frame in frames] == [None, None, None, "stop"]


def test_output_is_independent_of_chunk_boundaries():
    body = _standard_body()
    expected = _run([body])

    assert _run([body[i : i + 1] for i in range(len(body))]) == expected
    for offset in range(1, len(body)):
        assert _run([body[:offset], body[offset:]]) == expected


def test_exactly_one_sentinel_and_nothing_after_it():
    out = _run([_standard_body()])
    events = _decode(out)

    assert events.count(DONE) == 1
    assert events[-1] == DONE


def test_malformed_line_between_good_lines_is_skipped():
    body = _ndjson(_record("a"), '{"model": "llama3", "message": ', _record("b"))
    events = _decode(_run([body]))

    assert len(events) == 3
    assert events[0]["choices"][0]["delta"] == {"role": "assistant", "content": "a"}
    assert events[1]["choices"][0]["delta"] == {"content": "b"}
    assert events[2:] == [DONE]


def test_line_with_wrong_field_types_is_skipped():
    body = _ndjson(_record("a"), json.dumps({"message": "not-an-object", "done": False}), _record("b"))
    events = _decode(_run([body]))
    assert len(events) == 3
    assert events[-1] == DONE


def test_done_record_stops_processing_remaining_bytes():
    reframer = StreamReframer(request_id="chatcmpl-test", model="llama3")
    out = reframer.feed(_ndjson(_record("a", done=True), _record("ignored")) + b'{"partial')

    assert reframer.finished is True
    assert reframer.feed(_ndjson(_record("late"))) == []
    assert reframer.finish() == []
    events = _decode(out)
    assert len(events) == 2
    assert events[0]["choices"][0]["delta"] == {"role": "assistant", "content": "a"}
    assert events[1] == DONE


def test_end_of_input_without_done_still_emits_sentinel():
    events = _decode(_run([_ndjson(_record("a"), _record("b"))]))
    assert events[-1] == DONE
    assert len(events) == 3


def test_final_line_without_newline_is_flushed_on_finish():
    body = _ndjson(_record("a")) + _record("b").encode("utf-8")
    events = _decode(_run([body]))

    assert events[1]["choices"][0]["delta"] == {"content": "b"}
    assert events[-1] == DONE


def test_crlf_and_blank_lines_are_tolerated():
    body = f"{_record('a')}\r\n\r\n\n{_record('b', done=True)}\r\n".encode("utf-8")
    events = _decode(_run([body]))
    assert len(events) == 3
    assert events[1]["choices"][0]["finish_reason"] == "stop"


def test_done_as_first_record_carries_role():
    events = _decode(_run([_ndjson(_record("", done=True))]))
    assert events[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert events[1] == DONE


def test_empty_stream_emits_only_sentinel():
    assert _decode(_run([])) == [DONE]


def test_reframers_do_not_share_state():
    first = StreamReframer(request_id="chatcmpl-1", model="llama3")
    second = StreamReframer(request_id="chatcmpl-2", model="llama3")
    first.feed(_ndjson(_record("a")))

    events = _decode(second.feed(_ndjson(_record("b"))))
    assert events[0]["id"] == "chatcmpl-2"
    assert events[0]["choices"][0]["delta"]["role"] == "assistant"


def _collect(generator) -> list[bytes]:
    async def run_case() -> list[bytes]:
        return [chunk async for chunk in generator]

    return asyncio.run(run_case())


def test_reframe_backend_stream_closes_backend_after_done():
    state = {"closed": False, "pulled_after_done": False}

    async def fake_chunks():
        try:
            yield _ndjson(_record("a"))[:10]
            yield _ndjson(_record("a"))[10:] + _ndjson(_record("", done=True))
            state["pulled_after_done"] = True
            yield _ndjson(_record("never"))
        finally:
            state["closed"] = True

    events = _decode(_collect(reframe_backend_stream(fake_chunks(), request_id="chatcmpl-x", model="llama3")))

    assert events[-1] == DONE
    assert len(events) == 3
    assert state == {"closed": True, "pulled_after_done": False}


def test_reframe_backend_stream_transport_error_closes_without_sentinel():
    async def fake_chunks():
        yield _ndjson(_record("partial answer"))
        raise BackendStreamError("backend_stream_interrupted: connection reset")

    events = _decode(_collect(reframe_backend_stream(fake_chunks(), request_id="chatcmpl-x", model="llama3")))

    assert len(events) == 1
    assert events[0]["choices"][0]["delta"]["content"] == "partial answer"
    assert DONE not in events


@pytest.mark.asyncio
async def test_reframe_backend_stream_eof_without_done_emits_sentinel():
    async def fake_chunks():
        yield _ndjson(_record("a"), "garbage", _record("b"))

    out = [chunk async for chunk in reframe_backend_stream(fake_chunks(), request_id="chatcmpl-x", model="llama3")]
    events = _decode(out)

    assert [event["choices"][0]["delta"]["content"] for event in events[:-1]] == ["a", "b"]
    assert events[-1] == DONE


@pytest.mark.parametrize("bad_line", ['{"error": "model crashed"}', "{}", '{"done": true}'])
def test_json_line_that_is_not_a_chat_record_is_skipped(bad_line):
    reframer = StreamReframer(request_id="chatcmpl-test", model="llama3")
    out = reframer.feed(_ndjson(bad_line, _record("a"), _record("b", done=True)))
    events = _decode(out)

    assert reframer.lines_skipped == 1
    assert len(events) == 3
    assert events[0]["choices"][0]["delta"] == {"role": "assistant", "content": "a"}
    assert events[1]["choices"][0]["delta"] == {"content": "b"}
    assert events[1]["choices"][0]["finish_reason"] == "stop"
    assert events[2] == DONE


def test_backend_error_line_mid_stream_does_not_end_stream():
    body = _ndjson(_record("a"), '{"error": "model crashed"}', _record("b"))
    events = _decode(_run([body]))

    assert [event["choices"][0]["delta"]["content"] for event in events[:-1]] == ["a", "b"]
    assert [event["choices"][0]["finish_reason"] for event in events[:-1]] == [None, None]
    assert events[-1] == DONE


def test_terminal_frame_reports_length_cutoff():
    body = _ndjson(_record("a"), _record("", done=True, done_reason="length"))
    events = _decode(_run([body]))

    assert [event["choices"][0]["finish_reason"] for event in events[:-1]] == [None, "length"]
    assert events[-1] == DONE


def test_stream_logger_is_child_of_package_logger():
    from ollabridge.adapters.openai_compat import stream_utils

    assert stream_utils.logger.name == "ollabridge.stream"
