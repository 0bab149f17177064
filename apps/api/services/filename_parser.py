"""
Filename parsing for comic and manga archives.

Based on common scanner/release naming patterns:
- Western: "Batman #012 (2016) (Digital) [Group].cbz", "Saga 054 (2018).cbr"
- Manga: "Series v05.cbz", "Series v05 c012.cbz", "Series - Chapter 12.5.cbz"
"""

import re
import unicodedata
from dataclasses import dataclass
from pathlib import PurePath


@dataclass
class ParsedFilename:
    """Identity hints recovered from a filename."""
    series: str | None = None
    number: str | None = None
    volume: str | None = None
    chapter: str | None = None
    year: int | None = None
    publisher: str | None = None


ARCHIVE_EXTENSIONS = ('.cbz', '.cbr', '.cb7', '.cbt', '.zip', '.rar', '.7z', '.pdf', '.epub')

YEAR_PATTERN = re.compile(r'\(\s*((?:19|20)\d{2})\s*\)')
BRACKET_PATTERN = re.compile(r'\[[^\]]*\]|\{[^}]*\}')
PAREN_PATTERN = re.compile(r'\(([^)]*)\)')

COMPACT_VOLUME_CHAPTER = re.compile(r'\bv(\d+(?:\.\d+)?)\s*c(\d+(?:\.\d+)?)\b', re.IGNORECASE)
VOLUME_PATTERN = re.compile(r'(?:^|[\s\-_])(?:v|vol\.?|volume)\s*#?(\d+(?:\.\d+)?)\b', re.IGNORECASE)
CHAPTER_PATTERN = re.compile(r'(?:^|[\s\-_])(?:c|ch\.?|chapter)\s*#?(\d+(?:\.\d+)?)\b', re.IGNORECASE)
HASH_ISSUE_PATTERN = re.compile(r'#\s*(-?\d+(?:\.\d+)?[a-z]?)\b', re.IGNORECASE)
WORD_ISSUE_PATTERN = re.compile(r'\bissue\s*#?\s*(\d+(?:\.\d+)?)\b', re.IGNORECASE)
TRAILING_NUMBER_PATTERN = re.compile(r'\s(\d{1,4}(?:\.\d+)?)(?=\s*(?:$|-|\bof\b))', re.IGNORECASE)

# Release noise that sometimes appears outside brackets
NOISE_PATTERNS = [
    re.compile(r'\bc2c\b', re.IGNORECASE),
    re.compile(r'\bwebrip\b', re.IGNORECASE),
    re.compile(r'\bdigital\b', re.IGNORECASE),
    re.compile(r'\bscan(?:ned)?\b', re.IGNORECASE),
    re.compile(r'\bof\s+\d+\b', re.IGNORECASE),
]

KNOWN_PUBLISHERS = {
    'marvel': 'Marvel',
    'dc': 'DC Comics',
    'dc comics': 'DC Comics',
    'image': 'Image',
    'image comics': 'Image',
    'dark horse': 'Dark Horse Comics',
    'idw': 'IDW Publishing',
    'boom': 'BOOM! Studios',
    'boom studios': 'BOOM! Studios',
    'dynamite': 'Dynamite Entertainment',
    'viz': 'VIZ Media',
    'viz media': 'VIZ Media',
    'kodansha': 'Kodansha',
    'yen press': 'Yen Press',
}

PUNCTUATION_MAP = {
    ':': ' ',
    ';': ' ',
    '&': 'and',
    "'": '',
    '’': '',
    '‘': '',
    '"': '',
}


def format_number(value: str | None) -> str | None:
    """
    Normalize a numeric label for display and comparison.

    Strips leading zeros but keeps decimals ("005" -> "5", "012.5" -> "12.5",
    "000" -> "0"). Non-numeric labels are returned stripped.
    """
    if value is None:
        return None
    text = str(value).strip().lstrip('#').strip()
    if not text:
        return None
    match = re.fullmatch(r'(-?)(\d+)((?:\.\d+)?)([a-zA-Z]*)', text)
    if not match:
        return text
    sign, whole, fraction, suffix = match.groups()
    whole = whole.lstrip('0') or '0'
    if fraction and not fraction.strip('.0'):
        fraction = ''
    return f'{sign}{whole}{fraction}{suffix.upper()}'


def strip_extension(filename: str) -> str:
    name = PurePath(filename).name
    lowered = name.lower()
    for ext in ARCHIVE_EXTENSIONS:
        if lowered.endswith(ext):
            return name[:-len(ext)]
    return name


def normalize_series_name(name: str | None) -> str:
    """
    Normalize a series name into a grouping/comparison key.

    Handles:
    - Unicode normalization and accents
    - Case and punctuation
    - Leading articles
    - Whitespace
    """
    if not name:
        return ''

    normalized = unicodedata.normalize('NFKD', name)
    normalized = ''.join(ch for ch in normalized if not unicodedata.combining(ch))
    normalized = normalized.lower()

    for char, replacement in PUNCTUATION_MAP.items():
        normalized = normalized.replace(char, replacement)

    normalized = re.sub(r'[^\w\s]', ' ', normalized)
    normalized = normalized.replace('_', ' ')
    normalized = ' '.join(normalized.split())

    if normalized.startswith('the '):
        normalized = normalized[4:]

    return normalized.strip()


def _publisher_from_parens(text: str) -> str | None:
    for group in PAREN_PATTERN.findall(text):
        key = ' '.join(group.lower().replace('!', '').split())
        if key in KNOWN_PUBLISHERS:
            return KNOWN_PUBLISHERS[key]
    return None


def _clean_series(text: str) -> str | None:
    for pattern in NOISE_PATTERNS:
        text = pattern.sub(' ', text)
    text = re.sub(r'[\s\-_,.]+$', '', text)
    text = re.sub(r'^[\s\-_,.]+', '', text)
    text = ' '.join(text.split())
    return text or None


def parse_filename(filename: str) -> ParsedFilename:
    """
    Parse series, issue, volume, chapter, year and publisher from a filename.

    Everything before the first recognized number marker is treated as the
    series name.
    """
    result = ParsedFilename()
    name = strip_extension(filename)
    name = name.replace('_', ' ')
    name = re.sub(r'(?<!\d)\.(?!\d)', ' ', name)

    year_match = YEAR_PATTERN.search(name)
    if year_match:
        result.year = int(year_match.group(1))

    result.publisher = _publisher_from_parens(name)

    # Everything in brackets or parentheses is tags, never the series
    body = BRACKET_PATTERN.sub(' ', name)
    body = PAREN_PATTERN.sub(' ', body)
    body = ' '.join(body.split())

    cut = len(body)

    compact = COMPACT_VOLUME_CHAPTER.search(body)
    if compact:
        result.volume = format_number(compact.group(1))
        result.chapter = format_number(compact.group(2))
        cut = min(cut, compact.start())
    else:
        volume = VOLUME_PATTERN.search(body)
        if volume:
            result.volume = format_number(volume.group(1))
            cut = min(cut, volume.start())
        chapter = CHAPTER_PATTERN.search(body)
        if chapter:
            result.chapter = format_number(chapter.group(1))
            cut = min(cut, chapter.start())

    for pattern in (HASH_ISSUE_PATTERN, WORD_ISSUE_PATTERN):
        issue = pattern.search(body)
        if issue:
            result.number = format_number(issue.group(1))
            cut = min(cut, issue.start())
            break

    if result.number is None and result.volume is None and result.chapter is None:
        trailing_matches = list(TRAILING_NUMBER_PATTERN.finditer(body))
        if trailing_matches:
            trailing = trailing_matches[-1]
            result.number = format_number(trailing.group(1))
            cut = min(cut, trailing.start())

    if result.number is None and result.chapter is not None:
        result.number = result.chapter

    result.series = _clean_series(body[:cut])
    return result


def parse_issue_number(filename: str) -> str | None:
    """Shortcut for the issue number alone."""
    return parse_filename(filename).number
