"""
polystream - SSE Parser

Incremental Server-Sent Events parser. Feed it decoded text in chunks of
any size; it returns the complete events found so far and keeps the
partial tail for the next call. Output does not depend on where chunk
boundaries fall.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from ..observability.logging import get_logger

logger = get_logger("polystream.sse")

_BOUNDARY = re.compile(r"\r?\n\r?\n")
_LINE = re.compile(r"\r?\n")
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class ParsedSseEvent:
    """One dispatched SSE block."""
    data: str
    event: Optional[str] = None
    id: Optional[str] = None
    retry: Optional[int] = None

    @property
    def is_done_sentinel(self) -> bool:
        return self.data.strip() == DONE_SENTINEL


class SseParser:
    """
    Stateful SSE block parser for a single stream attempt.

    The buffer is bounded: once more than ``MAX_BUFFER`` characters
    accumulate without a block boundary, only the last ``TRIM_KEEP``
    characters are kept.
    """

    MAX_BUFFER = 1024 * 1024
    TRIM_KEEP = 64 * 1024

    def __init__(self):
        self._buffer = ""
        self.last_event_id: Optional[str] = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: str) -> List[ParsedSseEvent]:
        if not chunk:
            return []
        self._buffer += chunk
        events: List[ParsedSseEvent] = []

        while True:
            match = _BOUNDARY.search(self._buffer)
            if match is None:
                break
            block = self._buffer[:match.start()]
            self._buffer = self._buffer[match.end():]
            parsed = self._parse_block(block)
            if parsed is not None:
                events.append(parsed)

        if len(self._buffer) > self.MAX_BUFFER:
            excess = len(self._buffer) - self.TRIM_KEEP
            self._buffer = self._buffer[excess:]
            logger.warning("[SSE][BUFFER_TRIM]", excess=excess, kept=self.TRIM_KEEP)

        return events

    def flush_remainder(self) -> List[ParsedSseEvent]:
        """Parse whatever is left as a final block. Always empties the buffer."""
        remainder = self._buffer.strip()
        self._buffer = ""
        if not remainder:
            return []
        parsed = self._parse_block(remainder)
        return [parsed] if parsed is not None else []

    def _parse_block(self, block: str) -> Optional[ParsedSseEvent]:
        if not block:
            return None

        data_lines: List[str] = []
        event_type: Optional[str] = None
        event_id: Optional[str] = None
        retry: Optional[int] = None

        for line in _LINE.split(block):
            if not line or line.startswith(":"):
                continue
            field, sep, value = line.partition(":")
            if sep and value.startswith(" "):
                value = value[1:]

            if field == "data":
                data_lines.append(value)
            elif field == "event":
                event_type = value
            elif field == "id":
                event_id = value
                self.last_event_id = value
            elif field == "retry":
                m = _LEADING_INT.match(value)
                if m:
                    retry = int(m.group(1))

        # id-only blocks just update last_event_id
        if not data_lines and event_type is None:
            return None

        return ParsedSseEvent(
            data="\n".join(data_lines),
            event=event_type,
            id=event_id if event_id is not None else self.last_event_id,
            retry=retry,
        )
