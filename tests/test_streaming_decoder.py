import json

from src.athrean.services.streaming import NdjsonDecoder, decode_stream, encode_record, encode_records


def _payload() -> bytes:
    records = [
        {"type": "content", "content": "Héllo "},
        {"type": "reasoning", "reasoning": {"id": "r1", "title": "Plan", "content": "x", "status": "completed"}},
        {"type": "usage", "usage": {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3}},
        {"type": "content", "content": "wörld ✓"},
    ]
    return b"".join(encode_records(records))


def test_chunking_does_not_change_decoded_records():
    data = _payload()
    whole = list(decode_stream([data]))
    one_byte = list(decode_stream([data[i : i + 1] for i in range(len(data))]))
    sevens = list(decode_stream([data[i : i + 7] for i in range(0, len(data), 7)]))
    assert len(whole) == 4
    assert one_byte == whole
    assert sevens == whole
    assert whole[0]["content"] == "Héllo "
    assert whole[3]["content"] == "wörld ✓"


def test_partial_line_is_held_until_newline():
    decoder = NdjsonDecoder()
    assert decoder.feed(b'{"type":"content",') == []
    assert decoder.pending == '{"type":"content",'
    assert decoder.feed(b'"content":"a"}\n') == [{"type": "content", "content": "a"}]
    assert decoder.pending == ""


def test_invalid_lines_are_skipped_and_counted():
    decoder = NdjsonDecoder()
    records = decoder.feed(b'not json\n\n   \n[1,2]\n{"type":"content","content":"ok"}\n')
    assert records == [{"type": "content", "content": "ok"}]
    assert decoder.skipped == 2


def test_whitespace_around_line_is_ignored():
    decoder = NdjsonDecoder()
    assert decoder.feed(b'  {"type":"usage"}  \r\n') == [{"type": "usage"}]


def test_unterminated_tail_is_discarded_on_close():
    decoder = NdjsonDecoder()
    assert decoder.feed(b'{"type":"content","content":"a"}\n{"type":"content"') == [
        {"type": "content", "content": "a"}
    ]
    decoder.close()
    assert decoder.pending == ""


def test_multibyte_character_split_across_buffers():
    encoded = encode_record({"type": "content", "content": "🚀"})
    split_at = encoded.index("🚀".encode("utf-8")) + 2
    decoder = NdjsonDecoder()
    assert decoder.feed(encoded[:split_at]) == []
    assert decoder.feed(encoded[split_at:]) == [{"type": "content", "content": "🚀"}]


def test_encode_record_is_one_json_line():
    line = encode_record({"type": "content", "content": "a\nb"})
    assert line.endswith(b"\n")
    assert line.count(b"\n") == 1
    assert json.loads(line) == {"type": "content", "content": "a\nb"}
