from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

FENCE = "```"

_CLOSING_FENCE = re.compile(r"(?:^|\n)[ \t]*```")
# One or two backticks on their own final line: a closing fence still arriving.
_PARTIAL_CLOSE = re.compile(r"\n[ \t]*`{1,2}\Z")


@dataclass(frozen=True)
class CodeBlock:
    language: str
    code: str
    closed: bool


def extract_code_block(text: str) -> Optional[CodeBlock]:
    """Return the first fenced block in ``text``, closed or not.

    Pure function of its input: callers re-run it over the whole accumulated
    message on every delta instead of diffing.
    """

    if not text:
        return None
    start = text.find(FENCE)
    if start == -1:
        return None
    rest = text[start + len(FENCE) :]
    newline = rest.find("\n")
    if newline == -1:
        # Info string not finished yet; the body has not started.
        return CodeBlock(language=rest.strip(), code="", closed=False)

    language = rest[:newline].strip()
    body = rest[newline + 1 :]
    closing = _CLOSING_FENCE.search(body)
    if closing is not None:
        return CodeBlock(language=language, code=body[: closing.start()].strip("\r\n"), closed=True)

    body = _PARTIAL_CLOSE.sub("", body)
    return CodeBlock(language=language, code=body.strip("\r\n"), closed=False)


def extract_code(text: str) -> Optional[str]:
    """Code payload of the first fenced block, or ``None`` when there is nothing to show."""

    block = extract_code_block(text)
    if block is None or not block.code.strip():
        return None
    return block.code
