"""
Manga chapter/volume classification.

- Filename markers: "v05", "Vol. 5", "c012", "Ch. 12.5", "v05c012", "- 012"
- Special releases: oneshot, omake, extra/bonus/side story/gaiden
- Page count inference when the filename is ambiguous (short = chapter)
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from services.filename_parser import format_number, strip_extension


class MangaContentType(str, Enum):
    """What a single manga archive contains."""

    CHAPTER = "chapter"
    VOLUME = "volume"
    EXTRA = "extra"
    OMAKE = "omake"
    BONUS = "bonus"
    ONESHOT = "oneshot"


@dataclass
class ParsedMangaNumbers:
    """Numbers and content type inferred from a manga filename alone."""
    content_type: MangaContentType | None  # None when the filename gives no hint
    confidence: float
    volume: str | None = None
    chapter: str | None = None
    primary_number: str | None = None


@dataclass
class MangaClassification:
    """Final classification of one manga file."""
    content_type: MangaContentType
    display_title: str
    source: Literal["filename", "pagecount"]
    confidence: float
    volume: str | None = None
    chapter: str | None = None
    primary_number: str | None = None

    @property
    def virtual_issue_id(self) -> str | None:
        """Kind-prefixed identity for sources without an issue index ("volume-5")."""
        if not self.primary_number:
            return None
        return f"{self.content_type.value}-{self.primary_number}"


VOLUME_CHAPTER_PATTERN = re.compile(
    r'(?:v|vol\.?|volume)\s*(\d+(?:\.\d+)?)\s*[-\s]*(?:c|ch\.?|chapter)\s*(\d+(?:\.\d+)?)',
    re.IGNORECASE,
)
VOLUME_CHAPTER_COMPACT_PATTERN = re.compile(r'v(\d+)c(\d+)', re.IGNORECASE)
CHAPTER_ONLY_PATTERN = re.compile(r'(?:^|[\s\-_])(?:c|ch\.?|chapter)\s*#?(\d+(?:\.\d+)?)', re.IGNORECASE)
TRAILING_NUMBER_PATTERN = re.compile(r'[\s\-_](\d{2,4})(?:\s*(?:\(|\[|$))')
VOLUME_ONLY_PATTERN = re.compile(r'(?:^|[\s\-_])(?:v|vol\.?|volume)\s*#?(\d+(?:\.\d+)?)', re.IGNORECASE)
OMAKE_PATTERN = re.compile(r'\bomake\b', re.IGNORECASE)
EXTRA_PATTERN = re.compile(r'\b(?:extra|bonus|side\s*story|gaiden)\b', re.IGNORECASE)
ONESHOT_PATTERN = re.compile(r'\b(?:one[-\s]?shot|oneshot)\b', re.IGNORECASE)

DISPLAY_LABELS = {
    MangaContentType.CHAPTER: "Chapter",
    MangaContentType.VOLUME: "Volume",
    MangaContentType.EXTRA: "Extra",
    MangaContentType.OMAKE: "Omake",
    MangaContentType.BONUS: "Bonus",
    MangaContentType.ONESHOT: "One-Shot",
}


def _special_number(base_name: str) -> str | None:
    match = CHAPTER_ONLY_PATTERN.search(base_name) or TRAILING_NUMBER_PATTERN.search(base_name)
    return format_number(match.group(1)) if match else None


def parse_manga_filename(filename: str) -> ParsedMangaNumbers:
    """Parse volume/chapter numbers and a content type hint from a filename."""
    base_name = strip_extension(filename)

    if ONESHOT_PATTERN.search(base_name):
        return ParsedMangaNumbers(MangaContentType.ONESHOT, 0.9, primary_number="1")

    if OMAKE_PATTERN.search(base_name):
        number = _special_number(base_name)
        return ParsedMangaNumbers(MangaContentType.OMAKE, 0.85, chapter=number, primary_number=number or "1")

    if EXTRA_PATTERN.search(base_name):
        number = _special_number(base_name)
        return ParsedMangaNumbers(MangaContentType.EXTRA, 0.85, chapter=number, primary_number=number or "1")

    match = VOLUME_CHAPTER_PATTERN.search(base_name) or VOLUME_CHAPTER_COMPACT_PATTERN.search(base_name)
    if match:
        volume = format_number(match.group(1))
        chapter = format_number(match.group(2))
        # Both present: the file is a chapter within a volume
        return ParsedMangaNumbers(
            MangaContentType.CHAPTER, 0.95, volume=volume, chapter=chapter, primary_number=chapter
        )

    match = CHAPTER_ONLY_PATTERN.search(base_name)
    if match:
        chapter = format_number(match.group(1))
        return ParsedMangaNumbers(MangaContentType.CHAPTER, 0.9, chapter=chapter, primary_number=chapter)

    match = VOLUME_ONLY_PATTERN.search(base_name)
    if match:
        volume = format_number(match.group(1))
        return ParsedMangaNumbers(MangaContentType.VOLUME, 0.9, volume=volume, primary_number=volume)

    match = TRAILING_NUMBER_PATTERN.search(base_name)
    if match:
        number = format_number(match.group(1))
        return ParsedMangaNumbers(None, 0.7, chapter=number, primary_number=number)

    return ParsedMangaNumbers(None, 0.3)


def classify_by_page_count(page_count: int, threshold: int = 60) -> MangaContentType:
    return MangaContentType.CHAPTER if page_count < threshold else MangaContentType.VOLUME


def generate_display_title(content_type: MangaContentType, number: str | None = None) -> str:
    label = DISPLAY_LABELS[content_type]
    if content_type is MangaContentType.ONESHOT or not number:
        return label
    return f"{label} {format_number(number)}"


def classify_manga_file(
    filename: str,
    page_count: int | None,
    volume_page_threshold: int = 60,
    filename_overrides_page_count: bool = True,
) -> MangaClassification:
    """
    Classify a manga file from its filename and page count.

    Filename markers decide the type unless page count disagrees and
    ``filename_overrides_page_count`` is off. Without any filename hint the
    page count decides; without a page count either, the file is a chapter.
    """
    parsed = parse_manga_filename(filename)
    source: Literal["filename", "pagecount"] = "filename"

    if parsed.content_type is not None:
        content_type = parsed.content_type
        if (
            page_count
            and not filename_overrides_page_count
            and content_type in (MangaContentType.CHAPTER, MangaContentType.VOLUME)
        ):
            by_pages = classify_by_page_count(page_count, volume_page_threshold)
            if by_pages is not content_type:
                content_type = by_pages
                source = "pagecount"
    elif page_count:
        content_type = classify_by_page_count(page_count, volume_page_threshold)
        source = "pagecount"
    else:
        content_type = MangaContentType.CHAPTER

    primary_number = parsed.primary_number or parsed.chapter or parsed.volume

    return MangaClassification(
        content_type=content_type,
        display_title=generate_display_title(content_type, primary_number),
        source=source,
        confidence=parsed.confidence,
        volume=parsed.volume,
        chapter=parsed.chapter,
        primary_number=primary_number,
    )
