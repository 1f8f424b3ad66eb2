"""
Cross-provider deduplication.

Records are keyed by normalized title plus lower-cased first author. The
first record seen for a key is kept, so the order providers were consulted
in decides whose fields survive a collision.
"""
import re

from bookshelf.internal.models import BookRecord
from bookshelf.internal.normalize import normalize_language, normalize_name, normalize_text
from bookshelf.util.log import logger

# Free previews and samples are never the canonical edition
PREVIEW_TITLE_MARKERS = ("free preview", "sample")
PREVIEW_DESCRIPTION_MARKERS = ("free preview", "sample chapter")

SPECIAL_EDITION_MARKERS = (
    "graded reader",
    "elt reader",
    "english language teaching",
    "abridged",
    "simplified",
    "easy reader",
    "beginner reader",
    "intermediate reader",
    "young adult reader",
    "ya reader",
    "adapted",
    "retold",
    # Graded reader series
    "penguin readers",
    "oxford bookworms",
    "macmillan readers",
    "cambridge readers",
    "dominoes",
    "black cat",
    "green apple",
)
# Word-bounded so "felt" or "belt" never match
_ELT_RE = re.compile(r"\belt\b")
_LEVEL_RE = re.compile(
    r"\blevel\s+(\d+|one|two|three|four|five|six|seven|eight|nine|ten)\b",
    re.IGNORECASE,
)
_TEXT_LEVEL_RE = re.compile(r"\blevel\s+([1-7]|one|two|three|four|five|six|seven)\b")

# Short books only count as graded readers when they also say so
SHORT_EDITION_PAGES = 100
SHORT_EDITION_HINTS = ("reader", "graded", "level")


def dedup_key(record: BookRecord) -> str:
    author = record.authors[0] if record.authors else record.primary_author
    return f"{normalize_text(record.title)}|{normalize_name(author)}"


def is_preview(record: BookRecord) -> bool:
    title = record.title.lower()
    description = record.description.lower()
    return any(marker in title for marker in PREVIEW_TITLE_MARKERS) or any(
        marker in description for marker in PREVIEW_DESCRIPTION_MARKERS
    )


def is_special_edition(record: BookRecord) -> bool:
    """Graded readers, ELT, abridged, adapted and retold editions."""
    text = " ".join([record.title, record.description, *record.categories]).lower()
    if any(marker in text for marker in SPECIAL_EDITION_MARKERS):
        return True
    if _ELT_RE.search(text) or _TEXT_LEVEL_RE.search(text) or _LEVEL_RE.search(record.title):
        return True
    return 0 < record.page_count < SHORT_EDITION_PAGES and any(
        hint in text for hint in SHORT_EDITION_HINTS
    )


def deduplicate(
    records: list[BookRecord],
    language: str | None = None,
    exclude_special_editions: bool = False,
) -> list[BookRecord]:
    """
    Drop previews (and optionally special editions and other-language
    records), then keep the first record per dedup key and per id.
    """
    target_language = normalize_language(language) if language else None
    seen_keys: set[str] = set()
    seen_ids: set[str] = set()
    unique: list[BookRecord] = []
    excluded = 0

    for record in records:
        if is_preview(record):
            excluded += 1
            continue
        if exclude_special_editions and is_special_edition(record):
            excluded += 1
            continue
        if target_language and record.language != target_language:
            excluded += 1
            continue

        key = dedup_key(record)
        if key in seen_keys or record.id in seen_ids:
            continue
        seen_keys.add(key)
        seen_ids.add(record.id)
        unique.append(record)

    logger.debug(
        "Deduplicated records",
        received=len(records),
        excluded=excluded,
        kept=len(unique),
    )
    return unique
