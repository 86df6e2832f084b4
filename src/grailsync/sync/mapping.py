"""Field mapping from raw Discogs payloads to collection and want-list items."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from grailsync.models import CollectionItem, CustomField, WantItem

VALUE_SEPARATOR = " · "
_DISAMBIGUATION = re.compile(r"\s*\(\d+\)\s*$")
_PRICE_PAID_NAMES = {"price paid", "price", "cost", "purchase price"}


@dataclass
class FieldMap:
    """Which custom-field ids hold the well-known collection fields.

    Discogs numbers the default fields 1–3 but the ids move when users add
    or reorder fields, so the map is rebuilt from the schema on every sync.
    """

    media_condition_id: int | None = None
    sleeve_condition_id: int | None = None
    notes_id: int | None = None
    price_paid_id: int | None = None
    other_fields: dict[int, str] = field(default_factory=dict)


def build_field_map(fields: list[dict]) -> FieldMap:
    """Build a :class:`FieldMap` from the ``/collection/fields`` schema."""
    result = FieldMap()
    for f in fields:
        lower = str(f.get("name", "")).lower().strip()
        fid = f.get("id")
        if lower in ("media condition", "media"):
            result.media_condition_id = fid
        elif lower in ("sleeve condition", "sleeve"):
            result.sleeve_condition_id = fid
        elif lower == "notes":
            result.notes_id = fid
        elif lower in _PRICE_PAID_NAMES or "price paid" in lower:
            result.price_paid_id = fid
        else:
            result.other_fields[fid] = f.get("name", "")
    return result


def format_artist_name(name: str) -> str:
    """Strip the `` (N)`` suffix Discogs appends to disambiguate artists."""
    return _DISAMBIGUATION.sub("", name)


def _artist_line(artists: list[dict] | None) -> str:
    return ", ".join(format_artist_name(a.get("anv") or a.get("name", "")) for a in artists or [])


def _first_label(labels: list[dict] | None) -> tuple[str, str]:
    if not labels:
        return "Unknown", ""
    first = labels[0]
    return first.get("name") or "Unknown", first.get("catno") or ""


def _cover(info: dict) -> str:
    return info.get("cover_image") or info.get("thumb") or ""


def map_release(raw: dict, folder_map: dict[int, str], field_map: FieldMap) -> CollectionItem:
    """Map one ``releases[]`` entry of the collection endpoint."""
    info = raw["basic_information"]
    label, catno = _first_label(info.get("labels"))

    format_parts: list[str] = []
    for fmt in info.get("formats") or []:
        parts = [fmt.get("name"), *(fmt.get("descriptions") or [])]
        format_parts.append(", ".join(p for p in parts if p))

    media: list[str] = []
    sleeve: list[str] = []
    notes: list[str] = []
    price: list[str] = []
    custom: list[CustomField] = []

    for note in raw.get("notes") or []:
        value = note.get("value")
        if not value:
            continue
        fid = note.get("field_id")
        if field_map.media_condition_id is not None and fid == field_map.media_condition_id:
            media.append(value)
        elif field_map.sleeve_condition_id is not None and fid == field_map.sleeve_condition_id:
            sleeve.append(value)
        elif field_map.notes_id is not None and fid == field_map.notes_id:
            notes.append(value)
        elif field_map.price_paid_id is not None and fid == field_map.price_paid_id:
            price.append(value)
        elif fid in field_map.other_fields:
            custom.append(CustomField(name=field_map.other_fields[fid], value=value))
        else:
            # Field missing from the schema: keep the text rather than drop it.
            notes.append(value)

    release_id = info["id"]
    date_added = raw.get("date_added") or ""
    return CollectionItem(
        id=str(release_id),
        release_id=release_id,
        instance_id=raw.get("instance_id") or 0,
        title=info.get("title", ""),
        artist=_artist_line(info.get("artists")),
        year=info.get("year") or 0,
        cover=_cover(info),
        folder=folder_map.get(raw.get("folder_id"), "Uncategorized"),
        label=label,
        catalog_number=catno,
        format="; ".join(format_parts) or "Vinyl",
        media_condition=VALUE_SEPARATOR.join(media),
        sleeve_condition=VALUE_SEPARATOR.join(sleeve),
        price_paid=VALUE_SEPARATOR.join(price),
        notes=VALUE_SEPARATOR.join(notes),
        custom_fields=custom,
        date_added=date_added.split("T")[0],
        discogs_url=f"https://www.discogs.com/release/{release_id}",
    )


def map_want(raw: dict) -> WantItem:
    """Map one ``wants[]`` entry of the want-list endpoint."""
    info = raw["basic_information"]
    release_id = info["id"]
    label, _ = _first_label(info.get("labels"))
    return WantItem(
        id=f"w-{release_id}",
        release_id=release_id,
        title=info.get("title", ""),
        artist=_artist_line(info.get("artists")),
        year=info.get("year") or 0,
        cover=_cover(info),
        label=label,
    )


def dedupe_by_release(items: list[CollectionItem]) -> list[CollectionItem]:
    """Collapse items sharing a ``release_id``; the last occurrence wins.

    The surviving entry keeps the position of the first occurrence so the
    server's sort order is preserved.
    """
    latest: dict[int, CollectionItem] = {}
    for item in items:
        latest[item.release_id] = item
    return list(latest.values())
