"""
Field normalizers shared by every provider adapter.

These are the only place where provider-specific spellings of dates,
languages, cover links and ISBNs are reduced to the canonical record shape.
"""
import re
from datetime import datetime

from rapidfuzz import utils

UNKNOWN_DATE = "Unknown Date"
UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_AUTHOR = "Unknown Author"
DEFAULT_LANGUAGE = "en"

_YEAR_RE = re.compile(r"^\d{4}$")
_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{1,2})$")
_ISO_PREFIX_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ].*)?$")

# Formats seen in Open Library edition records and Google Books
_TEXT_DATE_FORMATS = (
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %Y",
    "%b %Y",
    "%Y/%m/%d",
    "%m/%d/%Y",
)

# MARC/ISO 639-2 codes providers use instead of ISO 639-1
_LANGUAGE_CODES = {
    "eng": "en",
    "fre": "fr",
    "fra": "fr",
    "ger": "de",
    "deu": "de",
    "spa": "es",
    "ita": "it",
    "por": "pt",
    "dut": "nl",
    "nld": "nl",
    "rus": "ru",
    "jpn": "ja",
    "chi": "zh",
    "zho": "zh",
    "swe": "sv",
    "pol": "pl",
}
_TWO_TO_THREE = {"en": "eng", "fr": "fre", "de": "ger", "es": "spa", "it": "ita", "pt": "por"}


def _valid_iso(value: str) -> bool:
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def normalize_published_date(value: object) -> str:
    """
    Map any provider date spelling to ``YYYY-MM-DD`` or ``UNKNOWN_DATE``.

    >>> normalize_published_date("1999")
    '1999-01-01'
    >>> normalize_published_date(1965)
    '1965-01-01'
    >>> normalize_published_date("someday")
    'Unknown Date'
    """
    if isinstance(value, bool):
        return UNKNOWN_DATE
    if isinstance(value, int):
        return f"{value:04d}-01-01" if 0 < value < 10000 else UNKNOWN_DATE
    if not isinstance(value, str):
        return UNKNOWN_DATE

    text = value.strip()
    if not text or text == UNKNOWN_DATE:
        return UNKNOWN_DATE

    if _YEAR_RE.match(text):
        return f"{text}-01-01"

    match = _YEAR_MONTH_RE.match(text)
    if match:
        candidate = f"{match.group(1)}-{int(match.group(2)):02d}-01"
        return candidate if _valid_iso(candidate) else UNKNOWN_DATE

    match = _ISO_PREFIX_RE.match(text)
    if match:
        return match.group(1) if _valid_iso(match.group(1)) else UNKNOWN_DATE

    for fmt in _TEXT_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue

    return UNKNOWN_DATE


def normalize_language(value: str | None) -> str:
    code = (value or "").strip().lower()
    if not code:
        return DEFAULT_LANGUAGE
    # Google Books sometimes returns regional tags such as "en-GB"
    code = code.split("-")[0].split("_")[0]
    return _LANGUAGE_CODES.get(code, code) or DEFAULT_LANGUAGE


def to_marc_language(value: str | None) -> str | None:
    """Three-letter code Open Library expects for its ``language`` filter."""
    code = normalize_language(value)
    return _TWO_TO_THREE.get(code)


def ensure_https(url: str | None) -> str:
    if not url:
        return ""
    url = url.strip()
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


def clean_isbn(isbn: str | None) -> str:
    if not isbn:
        return ""
    return re.sub(r"[\s-]", "", isbn)


def normalize_text(text: str | None) -> str:
    """Lower-case, strip punctuation and collapse whitespace."""
    if not text:
        return ""
    normalized = str(utils.default_process(text))
    return re.sub(r"\s+", " ", normalized).strip()


def normalize_name(name: str | None) -> str:
    if not name:
        return ""
    return re.sub(r"\s+", " ", name).strip().lower()
