"""
EPG router — XMLTV export of an imported EPG file.
"""
import logging
import time

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from database import get_session
from errors import IngestError
from models import ChannelLineup, EpgFile
from stream_ingestor import StreamIngestor
from xmltv_parser import export_filtered_xmltv

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/epg", tags=["EPG"])


@router.get("/{epg_file_id}/export-xmltv")
async def export_xmltv(epg_file_id: int, owner_id: int, filtered: bool = True):
    """Export the EPG file as XMLTV.

    With ``filtered`` (the default), only channels present in the imported
    lineup are kept, ordered by the lineup's sort order, along with their
    programmes.
    """
    logger.debug("[EPG] GET /api/epg/%s/export-xmltv - filtered=%s", epg_file_id, filtered)
    session = get_session()
    try:
        epg_file = (
            session.query(EpgFile)
            .filter(EpgFile.id == epg_file_id, EpgFile.owner_id == owner_id)
            .first()
        )
        if epg_file is None:
            raise HTTPException(status_code=404, detail="EPG file not found")
        url = epg_file.url
        rows = (
            session.query(ChannelLineup.tvg_id, ChannelLineup.sort_order)
            .filter(ChannelLineup.epg_file_id == epg_file_id, ChannelLineup.tvg_id.isnot(None))
            .all()
        )
    finally:
        session.close()

    allowed = [tvg_id for tvg_id, _ in rows]
    sort_order = {tvg_id: order for tvg_id, order in rows if order is not None}

    start = time.time()
    try:
        document = await StreamIngestor().fetch_document(url)
        if filtered:
            document = export_filtered_xmltv(document, allowed, sort_order)
    except IngestError as e:
        logger.warning("[EPG] Export of EPG file %s failed: %s", epg_file_id, e)
        raise HTTPException(status_code=502, detail=e.user_message)
    elapsed_ms = (time.time() - start) * 1000
    logger.info("[EPG] Exported EPG file %s (%d bytes) in %.1fms", epg_file_id, len(document), elapsed_ms)

    return Response(
        content=document,
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="epg-{epg_file_id}.xml"'},
    )
