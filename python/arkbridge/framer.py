"""Line framing for the sidecar's stdout stream."""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from .protocol import EventRecord, ProtocolError, parse_record


logger = logging.getLogger(__name__)

_MAX_LOGGED_LINE = 512


def _preview(line: bytes) -> str:
    text = line.decode("utf-8", errors="replace")
    if len(text) > _MAX_LOGGED_LINE:
        return text[:_MAX_LOGGED_LINE] + "..."
    return text


class LineFramer:
    """Split a byte stream on newlines and parse each line as one event.

    A bad line is logged and skipped; framing itself never raises.
    """

    def __init__(self, *, debug: bool = False) -> None:
        self.debug = debug
        self._buffer = b""
        self.malformed_count = 0

    def feed(self, chunk: bytes) -> List[EventRecord]:
        """Consume a chunk and return the records completed by it."""
        if not chunk:
            return []
        self._buffer += chunk
        records: List[EventRecord] = []
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            record = self.parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def flush(self) -> List[EventRecord]:
        """Parse whatever is left in the buffer (end of stream)."""
        line, self._buffer = self._buffer, b""
        record = self.parse_line(line)
        return [record] if record is not None else []

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def parse_line(self, line: bytes) -> Optional[EventRecord]:
        line = line.strip()
        if not line:
            return None
        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError:
            self._malformed(line, "invalid utf-8")
            return None
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as exc:
            self._malformed(line, f"invalid json ({exc.msg})")
            return None
        try:
            record = parse_record(obj)
        except ProtocolError as exc:
            self._malformed(line, str(exc))
            return None
        if self.debug:
            logger.debug("sidecar event %s comm=%s", record.event, record.comm_id)
        return record

    def _malformed(self, line: bytes, reason: str) -> None:
        self.malformed_count += 1
        logger.warning("dropping sidecar line: %s: %s", reason, _preview(line))
