"""
XMLTV channel extraction.

XmltvChannelParser is an event-driven parser built on ElementTree's
XMLPullParser. It accepts the document in arbitrary byte chunks and emits an
EpgChannel each time a top-level <channel> element closes. Every top-level
element is detached from the tree as soon as it closes, so memory stays
bounded by the element currently open, not by the document (a multi-gigabyte
guide holds at most one <programme> at a time).

export_filtered_xmltv is the non-streaming counterpart used for exports of
small, already-imported documents.
"""
import logging
import sys
import xml.etree.ElementTree as ET
from xml.parsers import expat
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Union

from errors import MalformedSource

logger = logging.getLogger(__name__)

UTF8_BOM = b"\xef\xbb\xbf"
PREVIEW_CHARS = 200
# Leading whitespace tolerated before the first markup byte
MAX_LEADING_WHITESPACE = 64 * 1024


@dataclass
class EpgChannel:
    """A <channel> record decoded from an XMLTV document."""
    external_id: str
    display_name: str
    logo_url: Optional[str] = None

    @property
    def key(self) -> str:
        """Stable identity: the XMLTV id, which the parser guarantees is non-empty."""
        return self.external_id

    def to_dict(self) -> dict:
        return {
            "tvg_id": self.external_id,
            "name": self.display_name,
            "tvg_logo": self.logo_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EpgChannel":
        return cls(
            external_id=data.get("tvg_id") or "",
            display_name=data.get("name") or "",
            logo_url=data.get("tvg_logo"),
        )


class XmltvChannelParser:
    """Incremental <channel> extractor.

    Usage::

        parser = XmltvChannelParser()
        for chunk in chunks:
            parser.feed(chunk)
            for channel in parser.drain():
                ...
        remaining = parser.close()
    """

    def __init__(self):
        self._pull = ET.XMLPullParser(events=("start", "end"))
        self._depth = 0
        self._root = None
        self._sniffed = False
        self._sniff_buffer = b""
        self._pending: list[EpgChannel] = []
        self._closed = False
        self.bytes_fed = 0
        self.channel_count = 0

    def feed(self, data: Union[bytes, str]) -> None:
        """Feed the next chunk of the document."""
        if self._closed:
            raise ValueError("parser is closed")
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        self.bytes_fed += len(data)

        if not self._sniffed:
            data = self._sniff(data)
            if not data:
                return

        try:
            self._pull.feed(data)
        except ET.ParseError as e:
            raise MalformedSource(f"Failed to parse EPG XML: {e}") from e
        self._read_events()

    def drain(self) -> list[EpgChannel]:
        """Return channels completed since the last drain."""
        channels, self._pending = self._pending, []
        return channels

    def close(self) -> list[EpgChannel]:
        """Finish the document and return channels not yet drained."""
        if self._closed:
            return self.drain()
        self._closed = True

        if not self._sniffed:
            raise MalformedSource("Invalid EPG XML: document is empty")
        try:
            self._pull.close()
        except ET.ParseError as e:
            raise MalformedSource(f"Failed to parse EPG XML: {e}") from e
        self._read_events()
        if self._root is None:
            raise MalformedSource("Invalid XMLTV format: missing <tv> root element")
        return self.drain()

    def _sniff(self, data: bytes) -> bytes:
        """Check the first markup byte; returns what should reach the XML parser."""
        self._sniff_buffer += data
        buffered = self._sniff_buffer
        if buffered.startswith(UTF8_BOM):
            buffered = buffered[len(UTF8_BOM):]
        elif UTF8_BOM.startswith(buffered):
            # Partial BOM, wait for more bytes
            return b""
        stripped = buffered.lstrip()
        if not stripped:
            if len(buffered) > MAX_LEADING_WHITESPACE:
                raise MalformedSource("Invalid EPG XML: document contains only whitespace")
            return b""
        if not stripped.startswith(b"<"):
            preview = stripped[:PREVIEW_CHARS].decode("utf-8", errors="replace")
            raise MalformedSource(
                "Invalid EPG XML: unexpected first character (not '<')",
                preview=preview,
            )
        self._sniffed = True
        self._sniff_buffer = b""
        return stripped

    def _read_events(self) -> None:
        try:
            for event, elem in self._pull.read_events():
                if event == "start":
                    self._depth += 1
                    if self._depth == 1:
                        if elem.tag != "tv":
                            raise MalformedSource(
                                f"Invalid XMLTV format: root element is <{elem.tag}>, expected <tv>"
                            )
                        self._root = elem
                    continue

                self._depth -= 1
                if self._depth == 1:
                    if elem.tag == "channel":
                        channel = channel_from_element(elem)
                        if channel is not None:
                            self._pending.append(channel)
                            self.channel_count += 1
                    self._root.remove(elem)
        except ET.ParseError as e:
            raise MalformedSource(f"Failed to parse EPG XML: {e}") from e


def channel_from_element(elem: ET.Element) -> Optional[EpgChannel]:
    """Build an EpgChannel from a <channel> element, or None if it lacks an id or name.

    The first non-empty <display-name> is the name (all of its text nodes
    joined and trimmed); the first <icon> with a src is the logo.
    """
    channel_id = (elem.get("id") or "").strip()
    if not channel_id:
        return None

    name = None
    logo = None
    for node in elem.iter():
        if node is elem:
            continue
        if node.tag == "display-name" and name is None:
            text = "".join(node.itertext()).strip()
            if text:
                name = text
        elif node.tag == "icon" and logo is None:
            src = (node.get("src") or "").strip()
            if src:
                logo = src

    if not name:
        return None
    return EpgChannel(external_id=channel_id, display_name=name, logo_url=logo)


def parse_xmltv_channels(document: Union[bytes, str]) -> list[EpgChannel]:
    """Parse a whole in-memory document with the streaming parser."""
    parser = XmltvChannelParser()
    parser.feed(document)
    channels = parser.drain()
    channels.extend(parser.close())
    logger.debug("[XMLTV] Parsed %d channels from %d bytes", len(channels), parser.bytes_fed)
    return channels


def _top_level_spans(document: bytes) -> tuple[str, dict, int, int, list[tuple[str, dict, int, int]]]:
    """Locate the root and its direct children by byte offset.

    Returns (root tag, root attributes, end of the root start tag, start of
    the root end tag, [(tag, attributes, start, end), ...]). An element ends
    where the next parser event begins, so each span covers exactly the
    element's own markup.
    """
    parser = expat.ParserCreate()
    state = {"depth": 0, "pending": None}
    root = {}
    children = []

    def close_pending():
        pending = state["pending"]
        if pending is None:
            return
        state["pending"] = None
        if pending == "root":
            root["open_end"] = parser.CurrentByteIndex
        else:
            children[pending][3] = parser.CurrentByteIndex

    def start(tag, attrs):
        close_pending()
        if state["depth"] == 0:
            root.update(tag=tag, attrs=attrs)
            state["pending"] = "root"
        elif state["depth"] == 1:
            children.append([tag, attrs, parser.CurrentByteIndex, None])
        state["depth"] += 1

    def end(tag):
        close_pending()
        state["depth"] -= 1
        if state["depth"] == 1:
            state["pending"] = len(children) - 1
        elif state["depth"] == 0:
            root["close_start"] = parser.CurrentByteIndex

    def other(*args):
        close_pending()

    parser.StartElementHandler = start
    parser.EndElementHandler = end
    parser.CharacterDataHandler = other
    parser.CommentHandler = other
    parser.ProcessingInstructionHandler = other
    parser.StartCdataSectionHandler = other
    try:
        parser.Parse(document, True)
    except expat.ExpatError as e:
        raise MalformedSource(f"Failed to parse EPG XML: {e}") from e

    return (
        root["tag"],
        root["attrs"],
        root["open_end"],
        root["close_start"],
        [tuple(child) for child in children],
    )


def export_filtered_xmltv(
    document: Union[bytes, str],
    allowed_ids: Iterable[str],
    sort_order: Optional[Mapping[str, int]] = None,
) -> bytes:
    """Filter an XMLTV document down to the allowed channels.

    Kept <channel> elements are reordered by ``sort_order`` (ids without an
    entry go last, in document order); <programme> elements are kept in
    document order when their channel attribute is allowed. The prolog
    (declaration, DOCTYPE, comments, the <tv> start tag), every kept element
    and everything after </tv> are copied byte for byte. Whitespace and
    comments between top-level elements become a single newline.
    """
    if isinstance(document, str):
        document = document.encode("utf-8")
    tag, _, open_end, close_start, children = _top_level_spans(document)
    if tag != "tv":
        raise MalformedSource(f"Invalid XMLTV format: root element is <{tag}>, expected <tv>")

    allowed = set(allowed_ids)
    order = sort_order or {}
    channels = [c for c in children if c[0] == "channel" and c[1].get("id") in allowed]
    channels.sort(key=lambda c: order.get(c[1].get("id"), sys.maxsize))
    programmes = [p for p in children if p[0] == "programme" and p[1].get("channel") in allowed]

    parts = [document[:open_end], b"\n"]
    for _, _, start, end in channels + programmes:
        parts.append(document[start:end])
        parts.append(b"\n")
    parts.append(document[close_start:])

    logger.debug(
        "[XMLTV] Export kept %d channels and %d programmes", len(channels), len(programmes)
    )
    return b"".join(parts)
