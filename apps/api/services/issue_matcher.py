"""
Issue matching for files against a series' issue index.

Strategy order:
1. Issue number exact (after normalization, "001" == "1")
2. Issue number numeric/variant ("1" vs "1.0", "5" vs "5A")
3. Issue title similarity when the filename carries no usable number
"""

import re
from dataclasses import dataclass

from services.approval_models import ParsedFileData
from services.filename_parser import format_number, normalize_series_name, parse_filename, strip_extension
from services.metadata_provider import IssueRecord, similarity_ratio


@dataclass
class IssueMatchResult:
    """Result of matching one file against an issue list."""
    issue: IssueRecord | None
    confidence: float  # 0.0 to 1.0
    match_method: str  # "number_exact", "number_numeric", "number_variant", "title_fuzzy", "none"
    candidate_number: str | None


NO_MATCH_METHOD = "none"


def candidate_issue_number(filename: str, parsed: ParsedFileData | None = None) -> str | None:
    """Issue number for a file: an assisted parse wins over the regex parser."""
    if parsed is not None and parsed.number:
        return format_number(parsed.number)
    return parse_filename(filename).number


def _as_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _leading_int(value: str | None) -> int | None:
    if not value:
        return None
    match = re.match(r'\s*#?\s*(-?\d+)', value)
    return int(match.group(1)) if match else None


def match_file_to_issue(
    filename: str,
    issues: list[IssueRecord],
    parsed: ParsedFileData | None = None,
) -> IssueMatchResult:
    """
    Pick the issue that best fits a file.

    Returns the best candidate with its confidence even when that is low;
    callers decide the accept threshold.
    """
    number = candidate_issue_number(filename, parsed)
    if not issues:
        return IssueMatchResult(None, 0.0, NO_MATCH_METHOD, number)

    if number is not None:
        numeric = _as_float(number)
        variant_match = None

        for issue in issues:
            issue_number = format_number(issue.number)
            if issue_number is None:
                continue
            if issue_number.lower() == number.lower():
                return IssueMatchResult(issue, 1.0, "number_exact", number)

        if numeric is not None:
            for issue in issues:
                if _as_float(format_number(issue.number)) == numeric:
                    return IssueMatchResult(issue, 0.95, "number_numeric", number)

            # "5A" style variants of the same issue
            for issue in issues:
                if _leading_int(issue.number) == int(numeric) and numeric.is_integer():
                    variant_match = issue
                    break

        if variant_match is not None:
            return IssueMatchResult(variant_match, 0.7, "number_variant", number)

    # Fall back to titles: "Batman - The Court of Owls.cbz"
    stem = normalize_series_name(strip_extension(filename))
    best_issue = None
    best_score = 0.0
    for issue in issues:
        if not issue.title:
            continue
        title = normalize_series_name(issue.title)
        if not title:
            continue
        score = similarity_ratio(stem, title)
        if title in stem:
            score = max(score, 0.85)
        if score > best_score:
            best_score = score
            best_issue = issue

    if best_issue is not None:
        return IssueMatchResult(best_issue, round(best_score * 0.8, 4), "title_fuzzy", number)

    return IssueMatchResult(None, 0.0, NO_MATCH_METHOD, number)


def best_guess_by_number(number: str | None, issues: list[IssueRecord]) -> IssueRecord | None:
    """Exact integer scan used only to show a guess next to an unmatched file."""
    wanted = _leading_int(number)
    if wanted is None:
        return None
    for issue in issues:
        if _leading_int(issue.number) == wanted:
            return issue
    return None
