"""
Factory functions for creating test data.

Each factory creates a model instance with sensible defaults that can be overridden.
All factories accept a session parameter and commit the created object.
"""
import json
import gzip
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session

from models import Playlist, Category, Channel, EpgFile, ChannelLineup, IngestJob


# Counter for generating unique IDs
_counter = {"value": 0}


def _next_id() -> int:
    """Generate a unique incrementing ID."""
    _counter["value"] += 1
    return _counter["value"]


def reset_counter() -> None:
    """Reset the counter (useful between tests)."""
    _counter["value"] = 0


def _save(session: Session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj


# -----------------------------------------------------------------------------
# Targets
# -----------------------------------------------------------------------------

def create_playlist(
    session: Session,
    owner_id: int = 1,
    name: str = None,
    playlist_type: str = "m3u",
    url: str = "http://provider.test/list.m3u",
    **kwargs
) -> Playlist:
    """Create a Playlist instance.

    Args:
        session: Database session
        owner_id: Owning user
        name: Playlist name (auto-generated if not provided)
        playlist_type: "m3u" or "xtream"
        url: Provider URL
        **kwargs: Additional fields (username, password, identifier_*)
    """
    return _save(session, Playlist(
        owner_id=owner_id,
        name=name or f"Playlist {_next_id()}",
        playlist_type=playlist_type,
        url=url,
        **kwargs
    ))


def create_epg_file(
    session: Session,
    owner_id: int = 1,
    name: str = None,
    url: str = "http://epg.test/guide.xml",
    channel_count: int = 0,
    is_default: bool = False,
    **kwargs
) -> EpgFile:
    """Create an EpgFile instance."""
    return _save(session, EpgFile(
        owner_id=owner_id,
        name=name or f"EPG {_next_id()}",
        url=url,
        channel_count=channel_count,
        is_default=is_default,
        **kwargs
    ))


# -----------------------------------------------------------------------------
# Stored entities
# -----------------------------------------------------------------------------

def create_channel(
    session: Session,
    playlist_id: int,
    stream_id: str = None,
    name: str = None,
    mapping: Optional[dict] = None,
    **kwargs
) -> Channel:
    """Create a Channel instance; ``mapping`` becomes the user-owned channel_mapping."""
    sid = stream_id or str(_next_id())
    return _save(session, Channel(
        playlist_id=playlist_id,
        stream_id=sid,
        name=name or f"Channel {sid}",
        stream_url=kwargs.pop("stream_url", f"http://provider.test/live/{sid}.ts"),
        channel_mapping=json.dumps(mapping) if mapping is not None else None,
        **kwargs
    ))


def create_category(session: Session, playlist_id: int, category_id: str, name: str = None) -> Category:
    return _save(session, Category(playlist_id=playlist_id, category_id=category_id, name=name or category_id))


def create_lineup_entry(
    session: Session,
    epg_file: EpgFile,
    tvg_id: str,
    name: str = None,
    tvg_logo: str = None,
    ext_grp: str = None,
    sort_order: int = None,
) -> ChannelLineup:
    """Create a ChannelLineup row keyed by ``tvg_id``."""
    return _save(session, ChannelLineup(
        owner_id=epg_file.owner_id,
        epg_file_id=epg_file.id,
        lineup_key=tvg_id,
        tvg_id=tvg_id,
        name=name or tvg_id,
        tvg_logo=tvg_logo,
        ext_grp=ext_grp,
        sort_order=sort_order,
    ))


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------

def create_job(
    session: Session,
    job_type: str = "epg_import",
    owner_id: int = 1,
    target_id: int = 1,
    status: str = "pending",
    progress: int = 0,
    updated_at: datetime = None,
    **kwargs
) -> IngestJob:
    """Create an IngestJob row directly, bypassing conflict checks."""
    now = datetime.utcnow()
    return _save(session, IngestJob(
        job_type=job_type,
        owner_id=owner_id,
        target_id=target_id,
        status=status,
        progress=progress,
        created_at=kwargs.pop("created_at", now),
        updated_at=updated_at or now,
        **kwargs
    ))


# -----------------------------------------------------------------------------
# Feed documents
# -----------------------------------------------------------------------------

def make_xmltv(channels: list[tuple], programmes: list[tuple] = ()) -> bytes:
    """Build an XMLTV document.

    Args:
        channels: (id, display_name, icon) tuples; None display_name omits the element
        programmes: (channel_id, title) tuples
    """
    parts = ['<?xml version="1.0" encoding="UTF-8"?>', '<tv generator-info-name="test">']
    for channel in channels:
        channel_id, name, icon = (tuple(channel) + (None, None))[:3]
        parts.append(f'  <channel id="{channel_id}">')
        if name is not None:
            parts.append(f"    <display-name>{name}</display-name>")
        if icon:
            parts.append(f'    <icon src="{icon}"/>')
        parts.append("  </channel>")
    for channel_id, title in programmes:
        parts.append(
            f'  <programme start="20260101000000 +0000" stop="20260101010000 +0000" channel="{channel_id}">'
            f"<title>{title}</title></programme>"
        )
    parts.append("</tv>")
    return "\n".join(parts).encode("utf-8")


def make_large_xmltv(count: int, prefix: str = "ch") -> bytes:
    return make_xmltv([(f"{prefix}{i}", f"Channel {i}", None) for i in range(count)])


def gzipped(data: bytes) -> bytes:
    return gzip.compress(data)
