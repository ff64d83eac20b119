"""
Diff fresh feed entities against stored entities by stable key.

A plan is computed once per job and persisted with it, so every chunk applies
the same insert/update/delete sets. Writes use upsert semantics, so a key
that appears between planning and writing cannot produce a duplicate.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)


class ReconcileMode(str, Enum):
    """FULL deletes stored keys missing from the feed; PARTIAL leaves them alone."""
    FULL = "full"
    PARTIAL = "partial"


@dataclass(frozen=True)
class EntitySpec:
    """Field ownership of one entity collection."""
    key_field: str
    source_fields: tuple
    user_fields: tuple
    # Values for user-owned fields of newly inserted rows: f(record, index)
    insert_defaults: Optional[Callable[[dict, int], dict]] = None


def _lineup_defaults(record: dict, index: int) -> dict:
    return {"ext_grp": "Imported channels", "sort_order": index}


LINEUP_SPEC = EntitySpec(
    key_field="lineup_key",
    source_fields=("tvg_id", "name", "tvg_logo"),
    user_fields=("ext_grp", "sort_order"),
    insert_defaults=_lineup_defaults,
)

CHANNEL_SPEC = EntitySpec(
    key_field="stream_id",
    source_fields=(
        "name", "stream_url", "stream_icon", "epg_channel_id", "category_id",
        "category_name", "tvg_id", "tvg_name", "tvg_logo", "group_title",
        "tvg_chno", "duration", "catchup", "catchup_days",
    ),
    user_fields=("channel_mapping",),
)


@dataclass
class ReconcilePlan:
    to_insert: list[str] = field(default_factory=list)
    to_update: list[str] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)
    skipped: int = 0
    # key -> user-owned fields captured from the stored entity
    preserved: dict[str, dict] = field(default_factory=dict)

    @property
    def write_count(self) -> int:
        return len(self.to_insert) + len(self.to_update)

    def to_dict(self) -> dict:
        return {
            "to_insert": self.to_insert,
            "to_update": self.to_update,
            "to_delete": self.to_delete,
            "skipped": self.skipped,
            "preserved": self.preserved,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReconcilePlan":
        return cls(
            to_insert=list(data.get("to_insert", [])),
            to_update=list(data.get("to_update", [])),
            to_delete=list(data.get("to_delete", [])),
            skipped=int(data.get("skipped", 0)),
            preserved=dict(data.get("preserved", {})),
        )


def dedupe_entities(entities: Iterable, key: Callable[[Any], str]) -> tuple[list, int]:
    """Drop repeated stable keys, keeping the first occurrence.

    Entities with an empty key are dropped too. Returns (kept, dropped_count).
    """
    seen = set()
    kept = []
    dropped = 0
    for entity in entities:
        k = key(entity)
        if not k or k in seen:
            dropped += 1
            continue
        seen.add(k)
        kept.append(entity)
    return kept, dropped


def reconcile(
    previous: Mapping[str, Mapping[str, Any]],
    fresh_keys: Iterable[str],
    mode: ReconcileMode,
) -> ReconcilePlan:
    """Compute insert/update/delete key sets.

    ``previous`` maps each stored key to its user-owned fields. ``fresh_keys``
    must already be deduplicated; a repeated key is counted as skipped.
    """
    plan = ReconcilePlan()
    seen = set()
    for key in fresh_keys:
        if key in seen:
            plan.skipped += 1
            continue
        seen.add(key)
        if key in previous:
            plan.to_update.append(key)
            user_state = {k: v for k, v in previous[key].items() if v is not None}
            if user_state:
                plan.preserved[key] = user_state
        else:
            plan.to_insert.append(key)

    if ReconcileMode(mode) == ReconcileMode.FULL:
        plan.to_delete = [key for key in previous if key not in seen]

    logger.debug(
        "[RECONCILE] %s plan: %d inserts, %d updates, %d deletes, %d preserved",
        ReconcileMode(mode).value, len(plan.to_insert), len(plan.to_update),
        len(plan.to_delete), len(plan.preserved),
    )
    return plan


def build_rows(
    records: Iterable[dict],
    start_index: int,
    plan: ReconcilePlan,
    spec: EntitySpec,
    inserts: Optional[set] = None,
) -> list[dict]:
    """Turn fresh records into store rows with user-owned fields reattached.

    Source-owned fields always come from the record. User-owned fields come
    from the preserved map for known keys, or from the insert defaults for
    new keys; anything else is None, which the store treats as "keep".
    """
    if inserts is None:
        inserts = set(plan.to_insert)
    rows = []
    for offset, record in enumerate(records):
        key = record[spec.key_field]
        row = {spec.key_field: key}
        for name in spec.source_fields:
            row[name] = record.get(name)
        user_values = dict.fromkeys(spec.user_fields)
        if key in plan.preserved:
            user_values.update(plan.preserved[key])
        elif key in inserts and spec.insert_defaults is not None:
            user_values.update(spec.insert_defaults(record, start_index + offset))
        row.update(user_values)
        rows.append(row)
    return rows
