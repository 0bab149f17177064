"""Filename templates for comic archives."""

import re
from pathlib import Path
from typing import Any

from services.filename_parser import format_number

PLACEHOLDER_PATTERN = re.compile(r'\{(\w+)(?::(\d+))?\}')
ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
EMPTY_GROUPS = re.compile(r'\(\s*\)|\[\s*\]|\{\s*\}')
DANGLING_HASH = re.compile(r'#(?=\s|$)')

DEFAULT_EXTENSION = ".cbz"

# Template names that may be filled from the catalog series when the file lacks them
SERIES_CONTEXT_FALLBACKS = {
    "series": "name",
    "publisher": "publisher",
    "year": "start_year",
    "volume": "volume",
    "count": "issue_count",
}


def pad_number(value: Any, width: int) -> str:
    """Zero-pad the integer part of an issue number ("1" -> "001", "12.5" -> "012.5")."""
    text = format_number(str(value)) or ""
    match = re.fullmatch(r'(-?)(\d+)(.*)', text)
    if not match:
        return text
    sign, whole, rest = match.groups()
    return f"{sign}{whole.zfill(width)}{rest}"


def sanitize_filename(name: str) -> str:
    name = ILLEGAL_CHARS.sub("", name)
    name = " ".join(name.split())
    return name.strip(" .-")


class RenameTemplate:
    """
    Renders filenames like ``"{series} #{number:03} ({year})"``.

    Placeholders name field-change keys (``series``, ``number``, ``title``,
    ``year``, ``publisher``, ``volume``, ...). ``:N`` zero-pads numbers.
    Placeholders that resolve to nothing are dropped together with the
    brackets or ``#`` around them.
    """

    def __init__(self, default_template: str, library_templates: dict[str, str] | None = None) -> None:
        self.default_template = default_template
        self.library_templates = dict(library_templates or {})

    def template_for(self, library_id: str | None) -> str:
        if library_id and library_id in self.library_templates:
            return self.library_templates[library_id]
        return self.default_template

    def propose(
        self,
        metadata: dict[str, Any],
        library_id: str | None = None,
        file_path: str | None = None,
        series_context: dict[str, Any] | None = None,
    ) -> str | None:
        """Filename for ``metadata``, or None when the template yields nothing usable."""
        template = self.template_for(library_id)
        context = series_context or {}

        def resolve(match: re.Match[str]) -> str:
            key, width = match.group(1), match.group(2)
            value = metadata.get(key)
            if value in (None, "") and key in SERIES_CONTEXT_FALLBACKS:
                value = context.get(SERIES_CONTEXT_FALLBACKS[key])
            if value in (None, ""):
                return ""
            if width:
                return pad_number(value, int(width))
            return str(value).replace("/", "-")

        rendered = PLACEHOLDER_PATTERN.sub(resolve, template)
        rendered = EMPTY_GROUPS.sub("", rendered)
        rendered = DANGLING_HASH.sub("", rendered)
        stem = sanitize_filename(rendered)
        if not re.search(r'\w', stem):
            return None

        extension = Path(file_path).suffix.lower() if file_path else ""
        return f"{stem}{extension or DEFAULT_EXTENSION}"


def resolve_collision(directory: Path, filename: str, current_path: Path | None = None) -> tuple[str, bool]:
    """
    Return a free filename in ``directory`` and whether a collision forced a change.

    The file being renamed never collides with itself. Clashes get a
    " (2)", " (3)", ... suffix.
    """
    candidate = directory / filename
    if not candidate.exists() or (current_path is not None and candidate == current_path):
        return filename, False

    stem, suffix = Path(filename).stem, Path(filename).suffix
    counter = 2
    while True:
        alternative = f"{stem} ({counter}){suffix}"
        path = directory / alternative
        if not path.exists() or (current_path is not None and path == current_path):
            return alternative, True
        counter += 1
