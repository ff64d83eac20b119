"""
Provider sources for playlist sync.

Each source returns a ProviderSnapshot of categories and channel records keyed
by stream id. XtreamSource talks to the player_api.php JSON API; M3USource
fetches and parses an M3U/M3U8 playlist.
"""
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from config import IngestSettings, get_settings
from errors import MalformedSource, NetworkError
from models import Playlist

logger = logging.getLogger(__name__)


@dataclass
class ProviderSnapshot:
    categories: list[dict] = field(default_factory=list)
    channels: list[dict] = field(default_factory=list)


class ProviderSource(Protocol):
    async def fetch(self) -> ProviderSnapshot: ...


def _str_or_none(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class _HttpSource:
    def __init__(self, settings: Optional[IngestSettings] = None):
        self.settings = settings or get_settings()

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.settings.read_timeout_seconds,
            connect=self.settings.connect_timeout_seconds,
        )
        return httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": self.settings.user_agent},
        )


# ---------------------------------------------------------------------------
# Xtream Codes
# ---------------------------------------------------------------------------

class XtreamSource(_HttpSource):
    """Live categories and streams from an Xtream Codes panel."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        category_filters: Optional[list[str]] = None,
        settings: Optional[IngestSettings] = None,
    ):
        super().__init__(settings)
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.category_filters = [str(c) for c in category_filters] if category_filters else None

    async def _get_json(self, client: httpx.AsyncClient, action: str, **params):
        query = {"username": self.username, "password": self.password, "action": action, **params}
        try:
            response = await client.get(f"{self.base_url}/player_api.php", params=query)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NetworkError(f"Xtream API request '{action}' failed: {e}") from e
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedSource(
                f"Xtream API returned invalid JSON for '{action}'",
                preview=response.text[:200],
            ) from e
        if not isinstance(data, list):
            raise MalformedSource(f"Xtream API returned unexpected data for '{action}'")
        return data

    def stream_url(self, stream_id) -> str:
        return f"{self.base_url}/live/{self.username}/{self.password}/{stream_id}.ts"

    def convert_channel(self, stream: dict, category_names: dict[str, str]) -> dict:
        stream_id = str(stream.get("stream_id"))
        category_id = _str_or_none(stream.get("category_id"))
        epg_id = _str_or_none(stream.get("epg_channel_id"))
        icon = _str_or_none(stream.get("stream_icon"))
        return {
            "stream_id": stream_id,
            "name": stream.get("name") or f"Stream {stream_id}",
            "stream_url": self.stream_url(stream_id),
            "stream_icon": icon,
            "epg_channel_id": epg_id,
            "category_id": category_id,
            "category_name": category_names.get(category_id) if category_id else None,
            "tvg_id": epg_id,
            "tvg_name": stream.get("name"),
            "tvg_logo": icon,
            "group_title": category_names.get(category_id) if category_id else None,
            "tvg_chno": _str_or_none(stream.get("num")),
            "duration": None,
            "catchup": "default" if stream.get("tv_archive") else None,
            "catchup_days": _str_or_none(stream.get("tv_archive_duration")) if stream.get("tv_archive") else None,
        }

    async def fetch(self) -> ProviderSnapshot:
        async with self._client() as client:
            raw_categories = await self._get_json(client, "get_live_categories")
            categories = [
                {"category_id": str(c.get("category_id")), "name": c.get("category_name") or ""}
                for c in raw_categories
                if c.get("category_id") is not None
            ]
            names = {c["category_id"]: c["name"] for c in categories}

            if self.category_filters:
                streams = []
                for category_id in self.category_filters:
                    streams.extend(await self._get_json(client, "get_live_streams", category_id=category_id))
                categories = [c for c in categories if c["category_id"] in self.category_filters]
            else:
                streams = await self._get_json(client, "get_live_streams")

        channels = [self.convert_channel(s, names) for s in streams if s.get("stream_id") is not None]
        logger.info(
            "[PROVIDER] Xtream %s: %d categories, %d channels",
            self.base_url, len(categories), len(channels),
        )
        return ProviderSnapshot(categories=categories, channels=channels)


# ---------------------------------------------------------------------------
# M3U
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"#EXTINF:([-0-9]+)")
_NAME_RE = re.compile(r",(.+)$")
_M3U_ATTRIBUTES = {
    "tvg_id": re.compile(r'\btvg-id="([^"]*)"'),
    "tvg_name": re.compile(r'\btvg-name="([^"]*)"'),
    "tvg_logo": re.compile(r'\btvg-logo="([^"]*)"'),
    "group_title": re.compile(r'\bgroup-title="([^"]*)"'),
    "tvg_chno": re.compile(r'\btvg-chno="([^"]*)"'),
    "catchup": re.compile(r'\bcatchup="([^"]*)"'),
    "catchup_days": re.compile(r'\bcatchup-days="([^"]*)"'),
}


def parse_m3u(content: str) -> list[dict]:
    """Parse #EXTINF entries followed by an http(s) URL line.

    An #EXTGRP line between the two overrides the group-title attribute.
    """
    entries = []
    current: dict = {}
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("#EXTINF"):
            duration = _DURATION_RE.search(line)
            name = _NAME_RE.search(line)
            current = {"duration": duration.group(1) if duration else None}
            for attr, pattern in _M3U_ATTRIBUTES.items():
                match = pattern.search(line)
                current[attr] = match.group(1) if match else None
            current["name"] = name.group(1).strip() if name else "Unknown Channel"
        elif line.startswith("#EXTGRP:"):
            group = line[len("#EXTGRP:"):].strip()
            if group and current.get("name"):
                current["group_title"] = group
        elif line.startswith(("http://", "https://")):
            if current.get("name"):
                current["url"] = line
                entries.append(current)
            current = {}
    return entries


def m3u_stream_key(entry: dict) -> str:
    """Stable key for an M3U entry: its tvg-id, else a digest of its stream URL."""
    tvg_id = (entry.get("tvg_id") or "").strip()
    if tvg_id:
        return f"m3u:tvg:{tvg_id}"
    digest = hashlib.sha1(entry["url"].encode("utf-8")).hexdigest()[:16]
    return f"m3u:url:{digest}"


class M3USource(_HttpSource):
    """Channels from an M3U playlist URL; groups become categories."""

    def __init__(
        self,
        url: str,
        category_filters: Optional[list[str]] = None,
        settings: Optional[IngestSettings] = None,
    ):
        super().__init__(settings)
        self.url = url
        self.category_filters = set(category_filters) if category_filters else None

    @staticmethod
    def convert_channel(entry: dict, stream_id: str) -> dict:
        group = entry.get("group_title") or None
        return {
            "stream_id": stream_id,
            "name": entry["name"],
            "stream_url": entry["url"],
            "stream_icon": entry.get("tvg_logo") or None,
            "epg_channel_id": entry.get("tvg_id") or None,
            "category_id": group,
            "category_name": group,
            "tvg_id": entry.get("tvg_id") or None,
            "tvg_name": entry.get("tvg_name") or None,
            "tvg_logo": entry.get("tvg_logo") or None,
            "group_title": group,
            "tvg_chno": entry.get("tvg_chno") or None,
            "duration": entry.get("duration"),
            "catchup": entry.get("catchup") or None,
            "catchup_days": entry.get("catchup_days") or None,
        }

    async def fetch(self) -> ProviderSnapshot:
        try:
            async with self._client() as client:
                response = await client.get(self.url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch M3U: {e}") from e

        text = response.text
        if "#EXTINF" not in text and not text.lstrip().startswith("#EXTM3U"):
            raise MalformedSource("Invalid M3U content", preview=text.strip()[:200])

        # Repeated keys get an occurrence suffix, counted over the unfiltered list
        channels = []
        occurrences: dict[str, int] = {}
        for entry in parse_m3u(text):
            key = m3u_stream_key(entry)
            occurrences[key] = occurrences.get(key, 0) + 1
            if occurrences[key] > 1:
                key = f"{key}#{occurrences[key]}"
            channels.append(self.convert_channel(entry, key))
        groups = []
        for channel in channels:
            group = channel["category_id"]
            if group and group not in groups:
                groups.append(group)
        categories = [{"category_id": g, "name": g} for g in groups]

        if self.category_filters:
            channels = [c for c in channels if c["category_id"] in self.category_filters]
            categories = [c for c in categories if c["category_id"] in self.category_filters]

        logger.info("[PROVIDER] M3U %s: %d categories, %d channels", self.url, len(categories), len(channels))
        return ProviderSnapshot(categories=categories, channels=channels)


def get_provider_source(
    playlist: Playlist,
    category_filters: Optional[list[str]] = None,
    settings: Optional[IngestSettings] = None,
) -> ProviderSource:
    """Pick the source implementation for a playlist's type."""
    if playlist.playlist_type == "xtream":
        return XtreamSource(
            playlist.url, playlist.username or "", playlist.password or "",
            category_filters=category_filters, settings=settings,
        )
    if playlist.playlist_type == "m3u":
        return M3USource(playlist.url, category_filters=category_filters, settings=settings)
    raise ValueError(f"Unsupported playlist type: {playlist.playlist_type}")
