"""
Job progress mapping.

Progress is derived from the job phase and its counters only, never from wall
clock time, so a job reports the same numbers however its work is split into
chunks:

- fetch/parse maps into 5..40
- reconcile/persist maps into 40..99
- completion is exactly 100

The light mapping_import family uses 5 (started), 30 (prepared) and 30..99
while applying.
"""
import math
from typing import Optional

FETCH_START = 5
FETCH_END = 40
PARSED = 38
IMPORT_START = 40
IMPORT_END = 99
COMPLETE = 100

MAPPING_START = 5
MAPPING_PREPARED = 30


def _band(start: int, end: int, done: int, total: int) -> int:
    if total <= 0:
        return end
    fraction = min(1.0, max(0.0, done / total))
    return start + math.floor(fraction * (end - start))


def fetch_progress(bytes_read: int, total_bytes: Optional[int], estimate_bytes: int) -> int:
    """Map download progress into the fetch band.

    When the source does not advertise a length, ``estimate_bytes`` stands in
    for it; the result is capped just below the parse marker either way.
    """
    total = total_bytes if total_bytes and total_bytes > 0 else estimate_bytes
    return min(PARSED - 1, _band(FETCH_START, FETCH_END, bytes_read, total))


def import_progress(processed: int, total: int) -> int:
    """Map reconcile/persist progress into the import band (never 100)."""
    return _band(IMPORT_START, IMPORT_END, processed, total)


def mapping_progress(processed: int, total: int) -> int:
    """Map applied mappings for the light job family."""
    return _band(MAPPING_PREPARED, IMPORT_END, processed, total)


def advance(current: int, proposed: int) -> int:
    """Return the next stored progress value; progress never moves backwards."""
    return max(current or 0, min(proposed, IMPORT_END))


def format_megabytes(num_bytes: int) -> str:
    return f"{(num_bytes or 0) / (1024 * 1024):.1f}MB"


def status_message(
    status: str,
    processed: int = 0,
    total: int = 0,
    bytes_read: int = 0,
    noun: str = "channels",
) -> str:
    """Human-readable status line for a job phase."""
    if status == "pending":
        return "Waiting to start..."
    if status == "downloading":
        return f"Downloading... {format_megabytes(bytes_read)}"
    if status == "parsing":
        return f"Parsed {total:,} {noun}. Preparing import..."
    if status == "importing":
        if processed >= total:
            return f"Imported {processed:,}/{total:,} {noun}..."
        return f"Imported {processed:,}/{total:,} {noun}... (continuing)"
    if status == "processing":
        return f"Applied {processed:,}/{total:,} {noun}..."
    if status == "completed":
        return f"Successfully imported {processed:,} {noun}"
    return status
