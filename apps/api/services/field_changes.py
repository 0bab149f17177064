"""Per-field metadata diffs between a file's current ComicInfo and a matched issue."""

import html
import logging
import re
from typing import Any

from db.models import ComicFile
from services.approval_models import NON_COMICINFO_FIELDS, FieldChange
from services.catalog_store import CatalogStore
from services.comicinfo_archive import ArchiveError, ComicInfoArchiveStore, element_to_field
from services.filename_parser import KNOWN_PUBLISHERS, format_number
from services.manga_classifier import MangaClassification, MangaContentType
from services.metadata_provider import Credit, IssueRecord, SeriesMatch

logger = logging.getLogger(__name__)

SUMMARY_MAX_LENGTH = 2000

TAG_PATTERN = re.compile(r'<[^>]+>')
BLOCK_TAG_PATTERN = re.compile(r'<\s*(?:br|/p|/div|/li|/h\d)\s*/?>', re.IGNORECASE)

# field -> role substrings, checked in order against each credit's roles
CREDIT_ROLES: dict[str, tuple[str, ...]] = {
    "writer": ("writer", "script", "story", "plot"),
    "penciller": ("pencil",),
    "inker": ("ink",),
    "colorist": ("color", "colour"),
    "letterer": ("letter",),
    "coverArtist": ("cover",),
    "editor": ("editor",),
}

# Role substrings used for penciller when no credit says "pencil"
PENCILLER_FALLBACK_ROLES = ("artist", "art")

# Imprint -> parent publisher
PUBLISHER_IMPRINTS = {
    "vertigo": "DC Comics",
    "dc black label": "DC Comics",
    "black label": "DC Comics",
    "wildstorm": "DC Comics",
    "young animal": "DC Comics",
    "marvel knights": "Marvel",
    "marvel max": "Marvel",
    "icon": "Marvel",
    "epic": "Marvel",
    "top cow": "Image",
    "skybound": "Image",
    "shadowline": "Image",
    "berger books": "Dark Horse Comics",
}


def strip_html(text: str | None, max_length: int = SUMMARY_MAX_LENGTH) -> str | None:
    """Plain-text summary from a source description."""
    if not text:
        return None
    plain = BLOCK_TAG_PATTERN.sub("\n", text)
    plain = TAG_PATTERN.sub("", plain)
    plain = html.unescape(plain)
    plain = re.sub(r'[ \t]+', ' ', plain)
    plain = re.sub(r'\n\s*\n+', '\n\n', plain).strip()
    if not plain:
        return None
    if len(plain) > max_length:
        plain = plain[: max_length - 3].rstrip() + "..."
    return plain


def normalize_publisher(name: str | None) -> tuple[str | None, str | None]:
    """
    Split a source publisher into ``(publisher, imprint)``.

    Imprints resolve to their parent publisher and are returned as the
    imprint; known spellings are canonicalized.
    """
    if not name or not name.strip():
        return None, None
    cleaned = name.strip()
    key = cleaned.lower()
    parent = PUBLISHER_IMPRINTS.get(key)
    if parent is not None:
        return parent, cleaned
    return KNOWN_PUBLISHERS.get(key, cleaned), None


def join_names(names: list[str] | None) -> str | None:
    unique = list(dict.fromkeys(n.strip() for n in names or [] if n and n.strip()))
    return ", ".join(unique) if unique else None


def _roles(credit: Credit) -> list[str]:
    return [r.strip().lower() for r in re.split(r'[,/]', credit.role) if r.strip()]


def credits_by_field(credits: list[Credit] | None) -> dict[str, str]:
    """Group contributor names into ComicInfo credit fields."""
    if not credits:
        return {}
    grouped: dict[str, list[str]] = {field: [] for field in CREDIT_ROLES}
    for credit in credits:
        roles = _roles(credit)
        for field, needles in CREDIT_ROLES.items():
            if any(needle in role for role in roles for needle in needles):
                grouped[field].append(credit.name)

    if not grouped["penciller"]:
        for credit in credits:
            roles = _roles(credit)
            if any(role in PENCILLER_FALLBACK_ROLES for role in roles):
                grouped["penciller"].append(credit.name)

    return {field: joined for field, names in grouped.items() if (joined := join_names(names))}


def split_cover_date(cover_date: str | None) -> tuple[int | None, int | None, int | None]:
    """Split "2016-06-01" into (2016, 6, 1); partial dates leave trailing parts None."""
    if not cover_date:
        return None, None, None
    parts = re.findall(r'\d+', cover_date)
    values: list[int | None] = [int(p) for p in parts[:3]]
    while len(values) < 3:
        values.append(None)
    year, month, day = values
    if month == 0:
        month = None
    if day == 0:
        day = None
    return year, month, day


def _same(current: Any, proposed: Any) -> bool:
    if current is None:
        return False
    return str(current).strip() == str(proposed).strip()


def build_field_changes(current: dict[str, Any], proposed: dict[str, Any]) -> dict[str, FieldChange]:
    """One FieldChange per proposed value that differs from what the file already has."""
    changes: dict[str, FieldChange] = {}
    for field, value in proposed.items():
        if value is None or value == "":
            continue
        existing = current.get(field)
        if _same(existing, value):
            continue
        changes[field] = FieldChange(current=existing, proposed=value)
    return changes


def issue_proposed_values(issue: IssueRecord, series: SeriesMatch) -> dict[str, Any]:
    """Proposed ComicInfo values for a western issue under a series identity."""
    year, month, day = split_cover_date(issue.cover_date)
    publisher, imprint = normalize_publisher(series.publisher)
    values: dict[str, Any] = {
        "series": series.name,
        "number": format_number(issue.number),
        "title": issue.title,
        "summary": strip_html(issue.description),
        "year": year,
        "month": month,
        "day": day,
        "characters": join_names(issue.characters),
        "teams": join_names(issue.teams),
        "locations": join_names(issue.locations),
        "storyArc": join_names(issue.story_arcs),
        "publisher": publisher,
        "imprint": imprint,
        "count": series.issue_count,
        "web": issue.url,
        "gtin": issue.gtin,
        "pageCount": issue.page_count,
    }
    values.update(credits_by_field(issue.credits))
    return values


def manga_proposed_values(classification: MangaClassification, number: str, series: SeriesMatch) -> dict[str, Any]:
    """Proposed values for a manga file from series-level metadata plus its chapter/volume number."""
    creators = join_names(series.creators)
    publisher, imprint = normalize_publisher(series.publisher)
    content_type = classification.content_type
    values: dict[str, Any] = {
        "series": series.name,
        "number": number,
        "title": classification.display_title,
        "summary": strip_html(series.description),
        "year": series.start_year,
        "writer": creators,
        "penciller": creators,
        "characters": join_names(series.characters),
        "genre": join_names(series.genres),
        "publisher": publisher,
        "imprint": imprint,
        "count": series.issue_count,
        "web": series.url,
        "manga": "Yes",
        "format": "Volume" if content_type is MangaContentType.VOLUME else "Chapter",
        "contentType": content_type.value,
        "parsedVolume": classification.volume,
        "parsedChapter": classification.chapter,
    }
    return values


def compose_metadata(
    current: dict[str, Any],
    fields: dict[str, FieldChange],
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Complete metadata a file would carry: current values, then proposed, then
    user edits, then ``overrides``. Non-ComicInfo fields are left out.
    """
    composed = dict(current)
    for name, change in fields.items():
        if name in NON_COMICINFO_FIELDS:
            continue
        value = change.effective_value
        if value is not None:
            composed[name] = value
    for name, value in (overrides or {}).items():
        if name not in NON_COMICINFO_FIELDS and value is not None:
            composed[name] = value
    return composed


async def get_current_metadata(
    file: ComicFile,
    archive: ComicInfoArchiveStore,
    catalog: CatalogStore,
) -> dict[str, Any]:
    """Current field values from the archive's ComicInfo.xml, else the catalog cache."""
    try:
        comicinfo = await archive.read_all(file.path)
    except ArchiveError as e:
        logger.warning("Falling back to cached metadata for %s: %s", file.filename, e)
        comicinfo = None

    if comicinfo is not None:
        return {element_to_field(element): value for element, value in comicinfo.items()}

    cached = await catalog.get_file_metadata(file.id)
    return cached.as_field_values() if cached else {}
