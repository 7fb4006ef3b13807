"""Route parsed sidecar records onto the event bus."""

from __future__ import annotations

import base64
import logging
import os
import re
from typing import Iterable, Optional
from urllib.parse import unquote, urlparse

from .events import (
    BaseEvent,
    EventBus,
    PlotDataEvent,
    ShowHelpEvent,
    ShowHtmlFileEvent,
    SidecarErrorEvent,
    parse_event,
)
from .protocol import EventRecord, Feed, ProtocolError


logger = logging.getLogger(__name__)

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_COMM_FEEDS = (Feed.COMM_OPEN, Feed.COMM_MESSAGE, Feed.COMM_CLOSE)


def _file_uri_to_path(uri: str) -> str:
    parsed = urlparse(uri)
    path = unquote(parsed.path)
    if parsed.netloc and parsed.netloc != "localhost":
        path = f"//{parsed.netloc}{path}"
    # file:///C:/... on Windows
    if os.name == "nt" and re.match(r"^/[A-Za-z]:", path):
        path = path[1:]
    return path


def normalize_image_payload(payload: str) -> Optional[tuple[str, str]]:
    """Return ``(base64_data, mime_type)`` for a legacy plot payload.

    The payload is a ``data:`` URI, a ``file://`` URI or filesystem path, or
    inline base64. Returns ``None`` when the payload is empty or names a file
    that cannot be read.
    """
    if not payload:
        return None
    match = _DATA_URI.match(payload)
    if match:
        return payload[match.end():], match.group("mime").lower()
    path = _file_uri_to_path(payload) if payload.startswith("file://") else payload
    if os.path.isfile(path):
        try:
            with open(path, "rb") as handle:
                content = handle.read()
        except OSError as exc:
            logger.error("failed to read plot file %s: %s", path, exc)
            return None
        mime = "image/svg+xml" if path.lower().endswith(".svg") else "image/png"
        return base64.b64encode(content).decode("ascii"), mime
    if payload.startswith("file://"):
        logger.error("plot file does not exist: %s", path)
        return None
    return _WHITESPACE.sub("", payload), "image/png"


class EventRouter:
    """Classify records by discriminant and publish typed events.

    Exactly one feed receives each record. Records that fail validation are
    logged and dropped.
    """

    def __init__(self, bus: EventBus, *, debug: bool = False) -> None:
        self.bus = bus
        self.debug = debug
        self.routed_count = 0
        self.dropped_count = 0

    def route_all(self, records: Iterable[EventRecord]) -> None:
        for record in records:
            self.route(record)

    def route(self, record: EventRecord) -> Optional[BaseEvent]:
        try:
            event = parse_event(record)
        except ProtocolError as exc:
            self.dropped_count += 1
            logger.warning("dropping sidecar event: %s", exc)
            return None
        event = self._prepare(event)
        if event is None:
            self.dropped_count += 1
            return None
        if self.debug:
            logger.debug("routing %s on %s (comm=%s)", event.event, event.feed.value, event.comm_id)
        self.routed_count += 1
        self.bus.publish(event)
        return event

    def _prepare(self, event: BaseEvent) -> Optional[BaseEvent]:
        if event.feed in _COMM_FEEDS and not event.comm_id:
            logger.warning("dropping %s without comm_id", event.event)
            return None
        if isinstance(event, SidecarErrorEvent):
            logger.error("sidecar error: %s", event.message)
            return event
        if isinstance(event, (ShowHtmlFileEvent, ShowHelpEvent)) and not event.params:
            logger.warning("dropping %s without params", event.event)
            return None
        if isinstance(event, PlotDataEvent):
            normalized = normalize_image_payload(event.payload)
            if normalized is None:
                return None
            event.base64_data, event.mime_type = normalized
        return event
