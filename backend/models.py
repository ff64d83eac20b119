"""
SQLAlchemy ORM models for playlists, EPG lineups and ingestion jobs.
"""
import json
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, Index, UniqueConstraint
from database import Base


class Playlist(Base):
    """
    A provider playlist (Xtream Codes account or M3U URL).
    Target of playlist_sync and mapping_import jobs.
    """
    __tablename__ = "playlists"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    playlist_type = Column(String(20), nullable=False)  # "xtream" or "m3u"
    url = Column(Text, nullable=False)
    username = Column(String(255), nullable=True)
    password = Column(String(255), nullable=True)
    # Mapping identifier extraction: "channel-name", "stream-url" or "metadata"
    identifier_source = Column(String(20), nullable=True)
    identifier_regex = Column(Text, nullable=True)
    identifier_metadata_key = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_playlist_owner", owner_id),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses (credentials omitted)."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "playlist_type": self.playlist_type,
            "url": self.url,
            "created_at": self.created_at.isoformat() + "Z" if self.created_at else None,
            "last_synced_at": self.last_synced_at.isoformat() + "Z" if self.last_synced_at else None,
        }

    def __repr__(self):
        return f"<Playlist(id={self.id}, name={self.name}, type={self.playlist_type})>"


class Category(Base):
    """Provider category (live TV group) belonging to a playlist."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, nullable=False)
    category_id = Column(String(64), nullable=False)  # Provider category id
    name = Column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint("playlist_id", "category_id", name="uq_category_playlist_category"),
    )

    def to_dict(self) -> dict:
        return {"category_id": self.category_id, "name": self.name}

    def __repr__(self):
        return f"<Category(playlist={self.playlist_id}, category_id={self.category_id}, name={self.name})>"


class Channel(Base):
    """
    A provider channel stored for a playlist.

    Identity is (playlist_id, stream_id). Every column except channel_mapping
    is refreshed by each sync; channel_mapping is the user's custom mapping
    (JSON with name/logo/extGrp/tvgId) and survives re-syncs.
    """
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    playlist_id = Column(Integer, nullable=False)
    stream_id = Column(String(255), nullable=False)
    name = Column(String(500), nullable=False)
    stream_url = Column(Text, nullable=False)
    stream_icon = Column(Text, nullable=True)
    epg_channel_id = Column(String(255), nullable=True)
    category_id = Column(String(64), nullable=True)
    category_name = Column(String(255), nullable=True)
    tvg_id = Column(String(255), nullable=True)
    tvg_name = Column(String(500), nullable=True)
    tvg_logo = Column(Text, nullable=True)
    group_title = Column(String(255), nullable=True)
    tvg_chno = Column(String(32), nullable=True)
    duration = Column(String(16), nullable=True)
    catchup = Column(String(32), nullable=True)
    catchup_days = Column(String(16), nullable=True)
    # User-owned
    channel_mapping = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("playlist_id", "stream_id", name="uq_channel_playlist_stream"),
        Index("idx_channel_playlist_category", "playlist_id", "category_id"),
    )

    def get_mapping(self) -> dict | None:
        """Decode the user mapping, ignoring invalid JSON."""
        if not self.channel_mapping:
            return None
        try:
            return json.loads(self.channel_mapping)
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "playlist_id": self.playlist_id,
            "stream_id": self.stream_id,
            "name": self.name,
            "stream_url": self.stream_url,
            "stream_icon": self.stream_icon,
            "epg_channel_id": self.epg_channel_id,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "tvg_id": self.tvg_id,
            "tvg_name": self.tvg_name,
            "tvg_logo": self.tvg_logo,
            "group_title": self.group_title,
            "tvg_chno": self.tvg_chno,
            "channel_mapping": self.get_mapping(),
        }

    def __repr__(self):
        return f"<Channel(playlist={self.playlist_id}, stream_id={self.stream_id}, name={self.name})>"


class EpgFile(Base):
    """An XMLTV source owned by a user. Target of epg_import jobs."""
    __tablename__ = "epg_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    channel_count = Column(Integer, default=0, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_epg_file_owner_name"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "url": self.url,
            "channel_count": self.channel_count,
            "is_default": self.is_default,
            "last_synced_at": self.last_synced_at.isoformat() + "Z" if self.last_synced_at else None,
        }

    def __repr__(self):
        return f"<EpgFile(id={self.id}, name={self.name}, channels={self.channel_count})>"


class ChannelLineup(Base):
    """
    One EPG channel of an EpgFile.

    lineup_key is the stable identity (tvg id, or name when the feed has no
    id). tvg_id, name and tvg_logo follow the feed; ext_grp and sort_order
    belong to the user and are never overwritten by a re-import.
    """
    __tablename__ = "channel_lineup"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)
    epg_file_id = Column(Integer, nullable=False)
    lineup_key = Column(String(255), nullable=False)
    tvg_id = Column(String(255), nullable=True)
    name = Column(String(500), nullable=False)
    tvg_logo = Column(Text, nullable=True)
    # User-owned
    ext_grp = Column(String(255), nullable=True)
    sort_order = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("epg_file_id", "lineup_key", name="uq_lineup_file_key"),
        Index("idx_lineup_owner_file", "owner_id", "epg_file_id"),
        Index("idx_lineup_sort", "epg_file_id", "sort_order"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "epg_file_id": self.epg_file_id,
            "tvg_id": self.tvg_id,
            "name": self.name,
            "tvg_logo": self.tvg_logo,
            "ext_grp": self.ext_grp,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<ChannelLineup(file={self.epg_file_id}, key={self.lineup_key}, name={self.name})>"


class IngestJob(Base):
    """
    A resumable ingestion job, processed in time-bounded chunks.

    job_type selects the family: "epg_import" and "playlist_sync" move through
    pending -> downloading -> parsing -> importing -> completed, while
    "mapping_import" moves through pending -> processing -> completed.
    Any non-terminal status may move to failed.
    """
    __tablename__ = "ingest_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(20), nullable=False)
    owner_id = Column(Integer, nullable=False)
    target_id = Column(Integer, nullable=False)  # EpgFile.id or Playlist.id
    source_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    progress = Column(Integer, default=0, nullable=False)
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    # Counters
    total_items = Column(Integer, default=0, nullable=False)
    processed_items = Column(Integer, default=0, nullable=False)
    not_found_items = Column(Integer, default=0, nullable=False)
    bytes_read = Column(BigInteger, default=0, nullable=False)
    total_bytes = Column(BigInteger, nullable=True)
    # Job inputs (JSON): category filters, uploaded mappings
    options = Column(Text, nullable=True)
    # Cached fetch output: inline JSON or path to an on-disk copy
    artifact_data = Column(Text, nullable=True)
    artifact_path = Column(Text, nullable=True)
    # Reconciliation plan computed once per job (JSON)
    plan_data = Column(Text, nullable=True)
    # Fetch lease
    lease_owner = Column(String(100), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_ingest_job_owner_target", "owner_id", "target_id", "job_type"),
        Index("idx_ingest_job_status", status),
        Index("idx_ingest_job_updated_at", updated_at),
    )

    def get_options(self) -> dict:
        """Decode the job options JSON."""
        if not self.options:
            return {}
        try:
            return json.loads(self.options)
        except (TypeError, ValueError):
            return {}

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "job_type": self.job_type,
            "owner_id": self.owner_id,
            "target_id": self.target_id,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "not_found_items": self.not_found_items,
            "bytes_read": self.bytes_read,
            "total_bytes": self.total_bytes,
            "created_at": self.created_at.isoformat() + "Z" if self.created_at else None,
            "updated_at": self.updated_at.isoformat() + "Z" if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() + "Z" if self.completed_at else None,
        }

    def __repr__(self):
        return f"<IngestJob(id={self.id}, type={self.job_type}, status={self.status}, progress={self.progress})>"
