import codecs
import json
from typing import Any, List

DATA_PREFIX = "data: "
DONE_PAYLOAD = "[DONE]"


class _Terminal:
    def __repr__(self) -> str:
        return "TERMINAL"


# End-of-stream sentinel returned by parse_line for "data: [DONE]"
TERMINAL = _Terminal()


def parse_line(line: str) -> Any:
    """Parse one complete event-stream line.

    Returns the decoded JSON payload, ``TERMINAL`` for ``[DONE]``, or ``None``
    for anything that is not a usable data line (comments, keep-alives, blank
    lines, malformed JSON).
    """
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_PAYLOAD:
        return TERMINAL
    if not payload:
        return None
    try:
        return json.loads(payload)
    except ValueError:
        return None


def encode_frame(frame: Any) -> str:
    if hasattr(frame, "model_dump"):
        frame = frame.model_dump()
    return f"{DATA_PREFIX}{json.dumps(frame, ensure_ascii=False)}\n\n"


def terminal_frame() -> str:
    return f"{DATA_PREFIX}{DONE_PAYLOAD}\n\n"


class LineBuffer:
    """Carry-over buffer turning arbitrary byte chunks into complete lines.

    Multi-byte characters split across chunks are held back by an incremental
    UTF-8 decoder; a trailing line without ``\\n`` is kept for the next feed.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._pending += self._decoder.decode(chunk)
        return self._drain()

    def flush(self) -> List[str]:
        self._pending += self._decoder.decode(b"", final=True)
        lines = self._drain()
        if self._pending:
            lines.append(self._pending.rstrip("\r"))
            self._pending = ""
        return lines

    def _drain(self) -> List[str]:
        *complete, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in complete]
