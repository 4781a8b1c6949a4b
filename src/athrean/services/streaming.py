from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Mapping

LOG = logging.getLogger("athrean.llm")


class NdjsonDecoder:
    """Turn raw byte buffers into newline-delimited JSON objects.

    A trailing partial line is held until the next buffer completes it. Lines that
    are not a JSON object are skipped so one bad record never ends the stream.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        # Incremental decoding keeps multi-byte characters intact across reads.
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self.skipped = 0

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        if not data:
            return []
        self._buffer += self._decoder.decode(data)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        records: List[Dict[str, Any]] = []
        for line in lines:
            record = self._parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def close(self) -> None:
        """End of stream: unterminated trailing content is not a record."""

        tail = self._buffer + self._decoder.decode(b"", final=True)
        if tail.strip():
            LOG.debug("ndjson_tail_discarded", extra={"chars": len(tail)})
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def _parse_line(self, line: str) -> Dict[str, Any] | None:
        trimmed = line.strip()
        if not trimmed:
            return None
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            self.skipped += 1
            LOG.debug("ndjson_line_skipped", extra={"line": trimmed[:200]})
            return None
        if not isinstance(parsed, dict):
            self.skipped += 1
            return None
        return parsed


def decode_stream(chunks: Iterable[bytes]) -> Iterator[Dict[str, Any]]:
    decoder = NdjsonDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    decoder.close()


def encode_record(record: Mapping[str, Any]) -> bytes:
    return (json.dumps(record, ensure_ascii=False) + "\n").encode("utf-8")


def encode_records(records: Iterable[Mapping[str, Any]]) -> Iterator[bytes]:
    for record in records:
        yield encode_record(record)


class TransportError(Exception):
    """The generation stream could not be opened or read."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
