"""
Feed fetching with transparent gzip decoding and strategy fallback.

A fetch always runs one of three strategies:

- buffered: download the whole body, decode it in memory, hand it to the sink
- streamed: decode and hand each network chunk to the sink as it arrives
- disk: stream decoded bytes into a temporary file, then replay the file

The primary strategy comes from a HEAD probe (advertised length at or below
the small-file threshold means buffered, anything else streamed). Retryable
failures move on to the next strategy of buffered -> streamed -> disk, bounded
by max_fetch_attempts.
"""
import asyncio
import logging
import os
import tempfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

import httpx

from config import IngestSettings, get_settings
from errors import CorruptedStream, IngestError, NetworkError, OversizedPayload, StallTimeout
from xmltv_parser import EpgChannel, XmltvChannelParser

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
REPLAY_CHUNK_SIZE = 1024 * 1024

STRATEGY_BUFFERED = "buffered"
STRATEGY_STREAMED = "streamed"
STRATEGY_DISK = "disk"
STRATEGY_ORDER = (STRATEGY_BUFFERED, STRATEGY_STREAMED, STRATEGY_DISK)

ProgressCallback = Callable[[int, Optional[int]], None]


class Sink(Protocol):
    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class ParserSink:
    """Feeds decoded bytes into an XmltvChannelParser and collects channels."""

    def __init__(self):
        self.parser = XmltvChannelParser()
        self.channels: list[EpgChannel] = []

    def write(self, data: bytes) -> None:
        if data:
            self.parser.feed(data)
            self.channels.extend(self.parser.drain())

    def close(self) -> None:
        self.channels.extend(self.parser.close())


class BufferSink:
    """Collects decoded bytes in memory (small documents only)."""

    def __init__(self):
        self._parts: list[bytes] = []

    def write(self, data: bytes) -> None:
        if data:
            self._parts.append(data)

    def close(self) -> None:
        pass

    @property
    def data(self) -> bytes:
        return b"".join(self._parts)


class FileSink:
    """Writes decoded bytes to a temporary file that can be replayed later."""

    def __init__(self, directory: Optional[Path] = None):
        if directory is not None:
            directory.mkdir(parents=True, exist_ok=True)
        fd, path = tempfile.mkstemp(prefix="ingest-", suffix=".xml", dir=directory)
        self.path = Path(path)
        self._file = os.fdopen(fd, "wb")
        self.bytes_written = 0

    def write(self, data: bytes) -> None:
        if data:
            self._file.write(data)
            self.bytes_written += len(data)

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def replay(self, sink: Sink, chunk_size: int = REPLAY_CHUNK_SIZE) -> None:
        """Feed the file contents into ``sink`` and close it."""
        self.close()
        with open(self.path, "rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                sink.write(chunk)
        sink.close()

    def discard(self) -> None:
        self.close()
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class GzipDecoder:
    """Incremental gzip decoder driven by the stream's magic number.

    The first two bytes decide whether the stream is compressed; the
    protocol hint (Content-Encoding header, .gz suffix) only matters when the
    stream ends before two bytes arrive. Concatenated gzip members are
    decoded in sequence.
    """

    def __init__(self, hint: bool = False):
        self.hint = hint
        self.compressed: Optional[bool] = None
        self._head = b""
        self._inflater = None
        self._trailing = False

    def decode(self, data: bytes) -> bytes:
        if self.compressed is None:
            self._head += data
            if len(self._head) < 2:
                return b""
            data, self._head = self._head, b""
            self.compressed = data[:2] == GZIP_MAGIC
            if self.compressed != self.hint:
                logger.debug(
                    "[INGEST] Compression hint (%s) disagrees with stream magic (%s)",
                    self.hint, self.compressed,
                )
            if self.compressed:
                self._inflater = zlib.decompressobj(zlib.MAX_WBITS | 16)
        if not self.compressed:
            return data
        return self._inflate(data)

    def _inflate(self, data: bytes) -> bytes:
        out = []
        try:
            while data and not self._trailing:
                if self._inflater.eof:
                    if data[:2] != GZIP_MAGIC[: len(data[:2])]:
                        logger.debug("[INGEST] Ignoring %d trailing bytes after gzip stream", len(data))
                        self._trailing = True
                        break
                    self._inflater = zlib.decompressobj(zlib.MAX_WBITS | 16)
                out.append(self._inflater.decompress(data))
                data = self._inflater.unused_data if self._inflater.eof else b""
        except zlib.error as e:
            raise CorruptedStream(f"Gzip decompression failed: {e}") from e
        return b"".join(out)

    def finish(self) -> bytes:
        """Flush the decoder; raises CorruptedStream if the gzip data was truncated."""
        if self.compressed is None:
            data, self._head = self._head, b""
            if data and self.hint:
                raise CorruptedStream("Compressed stream ended unexpectedly (truncated gzip data)")
            self.compressed = False
            return data
        if not self.compressed:
            return b""
        try:
            tail = self._inflater.flush()
        except zlib.error as e:
            raise CorruptedStream(f"Gzip decompression failed: {e}") from e
        if not self._inflater.eof:
            raise CorruptedStream("Compressed stream ended unexpectedly (truncated gzip data)")
        return tail


@dataclass
class FetchResult:
    bytes_read: int
    total_bytes: Optional[int]
    compressed: bool
    strategy: str


@dataclass
class IngestResult:
    channels: list[EpgChannel] = field(default_factory=list)
    fetch: Optional[FetchResult] = None
    attempts: int = 0


def plan_strategies(content_length: Optional[int], threshold: int, max_attempts: int) -> list[str]:
    """Strategies to try in order for a source of the given advertised length."""
    if content_length is not None and 0 < content_length <= threshold:
        primary = STRATEGY_BUFFERED
    else:
        primary = STRATEGY_STREAMED
    ordered = [primary] + [s for s in STRATEGY_ORDER if s != primary]
    return ordered[: max(1, max_attempts)]


def _content_length(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("content-length")
    if not value:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length > 0 else None


def _gzip_hint(url: str, response: Optional[httpx.Response] = None) -> bool:
    if url.split("?", 1)[0].lower().endswith(".gz"):
        return True
    if response is not None:
        # Content-Encoding is already undone by httpx; only the payload type matters here.
        return "gzip" in response.headers.get("content-type", "").lower()
    return False


class StreamIngestor:
    """Fetches feed documents into sinks."""

    def __init__(
        self,
        settings: Optional[IngestSettings] = None,
        temp_dir: Optional[Path] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.temp_dir = temp_dir
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.settings.read_timeout_seconds,
            connect=self.settings.connect_timeout_seconds,
        )
        return httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": self.settings.user_agent},
            transport=self.transport,
        )

    async def probe(self, url: str) -> Optional[int]:
        """Return the advertised content length, or None when unknown or unsupported."""
        try:
            async with self._client() as client:
                response = await client.head(url)
        except httpx.HTTPError as e:
            logger.debug("[INGEST] HEAD probe failed for %s: %s", url, e)
            return None
        if response.status_code >= 400:
            logger.debug("[INGEST] HEAD probe for %s returned HTTP %s", url, response.status_code)
            return None
        return _content_length(response)

    async def fetch(
        self,
        url: str,
        sink: Sink,
        buffered: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> FetchResult:
        """Download ``url`` into ``sink``, decoding gzip by magic number.

        The sink is closed on success. Raises NetworkError, StallTimeout,
        CorruptedStream, OversizedPayload, or whatever the sink raises.
        """
        stall_seconds = self.settings.stall_timeout_seconds
        decoder = GzipDecoder(hint=_gzip_hint(url))
        raw = bytearray()
        bytes_read = 0
        total_bytes = None

        try:
            async with self._client() as client:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        raise NetworkError(f"HTTP {response.status_code} fetching {url}")
                    total_bytes = _content_length(response)
                    decoder.hint = _gzip_hint(url, response)

                    chunks = response.aiter_bytes()
                    while True:
                        try:
                            chunk = await asyncio.wait_for(chunks.__anext__(), timeout=stall_seconds)
                        except StopAsyncIteration:
                            break
                        except asyncio.TimeoutError:
                            raise StallTimeout(stall_seconds)

                        bytes_read = response.num_bytes_downloaded or bytes_read + len(chunk)
                        if progress is not None:
                            progress(bytes_read, total_bytes)
                        if buffered:
                            raw.extend(chunk)
                        else:
                            sink.write(decoder.decode(chunk))
        except httpx.DecodingError as e:
            raise CorruptedStream(f"Failed to decode response from {url}: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch {url}: {e}") from e

        if buffered:
            sink.write(self._decode_buffered(decoder, bytes(raw)))
        else:
            sink.write(decoder.finish())
        sink.close()

        logger.debug(
            "[INGEST] Fetched %s bytes from %s (compressed=%s, buffered=%s)",
            bytes_read, url, decoder.compressed, buffered,
        )
        return FetchResult(
            bytes_read=bytes_read,
            total_bytes=total_bytes,
            compressed=bool(decoder.compressed),
            strategy=STRATEGY_BUFFERED if buffered else STRATEGY_STREAMED,
        )

    def _decode_buffered(self, decoder: GzipDecoder, raw: bytes) -> bytes:
        limit = self.settings.max_text_bytes
        parts = []
        size = 0
        for start in range(0, len(raw), REPLAY_CHUNK_SIZE):
            part = decoder.decode(raw[start:start + REPLAY_CHUNK_SIZE])
            size += len(part)
            if size > limit:
                raise OversizedPayload(len(raw), size)
            parts.append(part)
        tail = decoder.finish()
        size += len(tail)
        if size > limit:
            raise OversizedPayload(len(raw), size)
        parts.append(tail)
        return b"".join(parts)

    async def _run_strategy(
        self, strategy: str, url: str, sink: Sink, progress: Optional[ProgressCallback]
    ) -> FetchResult:
        if strategy == STRATEGY_BUFFERED:
            return await self.fetch(url, sink, buffered=True, progress=progress)
        if strategy == STRATEGY_STREAMED:
            return await self.fetch(url, sink, progress=progress)

        file_sink = FileSink(self.temp_dir)
        try:
            result = await self.fetch(url, file_sink, progress=progress)
            file_sink.replay(sink)
        finally:
            file_sink.discard()
        result.strategy = STRATEGY_DISK
        return result

    async def ingest_channels(
        self, url: str, progress: Optional[ProgressCallback] = None
    ) -> IngestResult:
        """Fetch and parse an XMLTV source with the fallback chain."""
        content_length = await self.probe(url)
        strategies = plan_strategies(
            content_length,
            self.settings.small_file_threshold_bytes,
            self.settings.max_fetch_attempts,
        )
        logger.info(
            "[INGEST] Fetching %s (advertised size: %s, strategies: %s)",
            url, content_length if content_length is not None else "unknown", ", ".join(strategies),
        )

        last_error: Optional[IngestError] = None
        for attempt, strategy in enumerate(strategies, start=1):
            sink = ParserSink()
            try:
                result = await self._run_strategy(strategy, url, sink, progress)
            except OversizedPayload as e:
                if attempt == 1:
                    raise
                # Only the in-memory fallback has a text cap; later strategies may still succeed
                logger.warning(
                    "[INGEST] %s fallback for %s exceeds the in-memory limit (attempt %d/%d): %s",
                    strategy, url, attempt, len(strategies), e,
                )
                last_error = last_error or e
                continue
            except IngestError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.warning(
                    "[INGEST] %s fetch of %s failed (attempt %d/%d): %s",
                    strategy, url, attempt, len(strategies), e,
                )
                continue

            logger.info(
                "[INGEST] Parsed %d channels from %s via %s fetch (%s bytes)",
                len(sink.channels), url, result.strategy, result.bytes_read,
            )
            return IngestResult(channels=sink.channels, fetch=result, attempts=attempt)

        if isinstance(last_error, CorruptedStream):
            raise CorruptedStream(
                f"Source is permanently corrupted after {len(strategies)} attempts: {last_error}"
            ) from last_error
        raise last_error

    async def fetch_document(self, url: str) -> bytes:
        """Fetch a small document fully into memory, decoded."""
        sink = BufferSink()
        await self.fetch(url, sink, buffered=True)
        return sink.data
