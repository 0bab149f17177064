"""ComicInfo.xml read/write for comic archives and CBR -> CBZ conversion."""

import asyncio
import logging
import os
import tempfile
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path
from typing import Any

import rarfile
from pydantic import BaseModel

logger = logging.getLogger(__name__)

COMICINFO_NAME = "ComicInfo.xml"

# ComicInfo v2 element order
COMICINFO_ELEMENTS = [
    "Title", "Series", "Number", "Count", "Volume", "AlternateSeries", "AlternateNumber",
    "AlternateCount", "Summary", "Notes", "Year", "Month", "Day", "Writer", "Penciller",
    "Inker", "Colorist", "Letterer", "CoverArtist", "Editor", "Translator", "Publisher",
    "Imprint", "Genre", "Tags", "Web", "PageCount", "LanguageISO", "Format",
    "BlackAndWhite", "Manga", "Characters", "Teams", "Locations", "ScanInformation",
    "StoryArc", "StoryArcNumber", "SeriesGroup", "AgeRating", "CommunityRating",
    "Review", "GTIN",
]
INTEGER_ELEMENTS = {"Count", "Volume", "AlternateCount", "Year", "Month", "Day", "PageCount"}
FLOAT_ELEMENTS = {"CommunityRating"}

# Field-change keys whose ComicInfo element is not a plain capitalization
_SPECIAL_ELEMENT_NAMES = {"gtin": "GTIN", "languageISO": "LanguageISO"}

CONVERTIBLE_SUFFIXES = {".cbr"}


class ArchiveError(Exception):
    """Base exception for archive I/O errors."""

    pass


class ConversionError(ArchiveError):
    """Raised when an archive cannot be converted to CBZ."""

    pass


class ArchiveWriteResult(BaseModel):
    """Outcome of a ComicInfo merge."""

    success: bool
    error: str | None = None


class ConversionResult(BaseModel):
    """Outcome of an archive conversion."""

    success: bool
    original_path: str
    new_path: str | None = None
    error: str | None = None


def field_to_element(field_name: str) -> str:
    """Map a field-change key ("coverArtist") to its ComicInfo element ("CoverArtist")."""
    if field_name in _SPECIAL_ELEMENT_NAMES:
        return _SPECIAL_ELEMENT_NAMES[field_name]
    return field_name[:1].upper() + field_name[1:]


def element_to_field(element: str) -> str:
    """Inverse of ``field_to_element``."""
    for field_name, special in _SPECIAL_ELEMENT_NAMES.items():
        if special == element:
            return field_name
    return element[:1].lower() + element[1:]


def _coerce(element: str, text: str) -> Any:
    value = text.strip()
    if element in INTEGER_ELEMENTS:
        try:
            return int(value)
        except ValueError:
            return value
    if element in FLOAT_ELEMENTS:
        try:
            return float(value)
        except ValueError:
            return value
    return value


def parse_comicinfo(xml_data: bytes | str) -> dict[str, Any]:
    """Parse ComicInfo.xml content into {element: value} for known scalar elements."""
    root = ET.fromstring(xml_data)
    metadata: dict[str, Any] = {}
    for element in COMICINFO_ELEMENTS:
        node = root.find(element)
        if node is not None and node.text and node.text.strip():
            metadata[element] = _coerce(element, node.text)
    return metadata


def render_comicinfo(existing: bytes | None, updates: dict[str, Any]) -> bytes:
    """Apply ``updates`` onto existing ComicInfo.xml (or a blank one), keeping unknown elements."""
    if existing:
        root = ET.fromstring(existing)
    else:
        root = ET.Element("ComicInfo")
        root.set("xmlns:xsi", "http://www.w3.org/2001/XMLSchema-instance")
        root.set("xmlns:xsd", "http://www.w3.org/2001/XMLSchema")

    for element, value in updates.items():
        if value is None:
            continue
        node = root.find(element)
        if node is None:
            node = ET.Element(element)
            # Keep schema order ahead of trailing elements such as <Pages>
            position = len(root)
            if element in COMICINFO_ELEMENTS:
                rank = COMICINFO_ELEMENTS.index(element)
                for i, child in enumerate(root):
                    if child.tag not in COMICINFO_ELEMENTS or COMICINFO_ELEMENTS.index(child.tag) > rank:
                        position = i
                        break
            root.insert(position, node)
        if isinstance(value, (list, tuple)):
            node.text = ", ".join(str(v) for v in value)
        else:
            node.text = str(value)

    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def _find_comicinfo(names: list[str]) -> str | None:
    for name in names:
        if Path(name).name.lower() == COMICINFO_NAME.lower():
            return name
    return None


class ComicInfoArchiveStore:
    """
    Embedded metadata access for CBZ archives.

    Zip work is blocking, so every public call runs in a worker thread.
    """

    def requires_conversion(self, path: str | Path) -> bool:
        return Path(path).suffix.lower() in CONVERTIBLE_SUFFIXES

    async def read_all(self, path: str | Path) -> dict[str, Any] | None:
        """ComicInfo fields of the archive, or None when it carries no ComicInfo.xml."""
        return await asyncio.to_thread(self._read_all_sync, Path(path))

    def _read_all_sync(self, path: Path) -> dict[str, Any] | None:
        try:
            with zipfile.ZipFile(path) as archive:
                name = _find_comicinfo(archive.namelist())
                if name is None:
                    return None
                return parse_comicinfo(archive.read(name))
        except (OSError, zipfile.BadZipFile, ET.ParseError) as e:
            raise ArchiveError(f"Cannot read ComicInfo from {path.name}: {e}") from e

    async def merge(self, path: str | Path, partial: dict[str, Any]) -> ArchiveWriteResult:
        """Merge ``partial`` ({ComicInfo element: value}) into the archive's ComicInfo.xml."""
        try:
            await asyncio.to_thread(self._merge_sync, Path(path), partial)
        except ArchiveError as e:
            logger.warning("ComicInfo merge failed for %s: %s", path, e)
            return ArchiveWriteResult(success=False, error=str(e))
        return ArchiveWriteResult(success=True)

    def _merge_sync(self, path: Path, partial: dict[str, Any]) -> None:
        if not path.exists():
            raise ArchiveError(f"File not found: {path}")

        fd, tmp_name = tempfile.mkstemp(prefix=".comicinfo-", suffix=".tmp", dir=path.parent)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            with zipfile.ZipFile(path) as source, zipfile.ZipFile(tmp_path, "w", zipfile.ZIP_DEFLATED) as target:
                existing_name = _find_comicinfo(source.namelist())
                existing = source.read(existing_name) if existing_name else None
                for item in source.infolist():
                    if item.filename == existing_name:
                        continue
                    target.writestr(item, source.read(item.filename), compress_type=item.compress_type)
                target.writestr(COMICINFO_NAME, render_comicinfo(existing, partial))
            os.replace(tmp_path, path)
        except (OSError, zipfile.BadZipFile, ET.ParseError) as e:
            raise ArchiveError(f"Cannot write ComicInfo to {path.name}: {e}") from e
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    async def convert(self, path: str | Path) -> ConversionResult:
        """Convert a CBR archive to CBZ beside it, deleting the original on success."""
        source = Path(path)
        try:
            new_path = await asyncio.to_thread(self._convert_sync, source)
        except ConversionError as e:
            logger.warning("Conversion failed for %s: %s", source, e)
            return ConversionResult(success=False, original_path=str(source), error=str(e))
        logger.info("Converted %s -> %s", source.name, new_path.name)
        return ConversionResult(success=True, original_path=str(source), new_path=str(new_path))

    def _convert_sync(self, source: Path) -> Path:
        if not source.exists():
            raise ConversionError(f"File not found: {source}")
        target = source.with_suffix(".cbz")
        if target.exists():
            raise ConversionError(f"Target already exists: {target.name}")

        tmp_path = target.with_name(f".{target.name}.partial")
        try:
            with rarfile.RarFile(source) as rar, zipfile.ZipFile(tmp_path, "w", zipfile.ZIP_DEFLATED) as out:
                for info in rar.infolist():
                    if info.is_dir():
                        continue
                    out.writestr(info.filename, rar.read(info))
            os.replace(tmp_path, target)
        except (OSError, rarfile.Error, zipfile.BadZipFile) as e:
            raise ConversionError(f"Cannot convert {source.name}: {e}") from e
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        try:
            source.unlink()
        except OSError as e:
            logger.warning("Converted %s but could not delete the original: %s", source.name, e)
        return target
