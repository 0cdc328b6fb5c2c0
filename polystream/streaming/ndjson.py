"""
polystream - NDJSON Decoder

Line-delimited JSON as streamed by Ollama. Malformed lines are skipped.
"""

import json
from typing import Any, List

from ..observability.logging import get_logger

logger = get_logger("polystream.ndjson")


class NdjsonDecoder:
    """Incremental newline-delimited JSON decoder."""

    def __init__(self):
        self._buffer = ""
        self.skipped = 0

    def feed(self, chunk: str) -> List[Any]:
        if not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode(lines)

    def flush(self) -> List[Any]:
        remainder, self._buffer = self._buffer, ""
        return self._decode([remainder])

    def _decode(self, lines: List[str]) -> List[Any]:
        records = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except ValueError:
                self.skipped += 1
                logger.debug("[NDJSON][SKIP] malformed line", length=len(line))
        return records
