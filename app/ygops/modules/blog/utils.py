from __future__ import annotations

import math
import re
import unicodedata
from collections.abc import Iterable

import bleach

SLUG_MAX_LENGTH = 150
WORDS_PER_MINUTE = 200
EXCERPT_MAX_LENGTH = 160

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")

ALLOWED_TAGS = frozenset(
    {
        "a", "abbr", "b", "blockquote", "br", "code", "em", "figcaption", "figure", "h1", "h2", "h3",
        "h4", "h5", "h6", "hr", "i", "img", "li", "ol", "p", "pre", "s", "span", "strong", "sub",
        "sup", "table", "tbody", "td", "th", "thead", "tr", "u", "ul",
    }
)
ALLOWED_ATTRIBUTES = {
    "a": ["href", "title", "rel", "target"],
    "img": ["src", "alt", "title", "width", "height"],
    "span": ["class"],
    "code": ["class"],
    "td": ["colspan", "rowspan"],
    "th": ["colspan", "rowspan"],
}
ALLOWED_PROTOCOLS = frozenset({"http", "https", "mailto"})


def sanitize_html(content: str) -> str:
    return bleach.clean(
        content or "",
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
    )


def plain_text(content: str) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", content or "")).strip()


def slugify(title: str, *, existing: Iterable[str] = (), max_length: int = SLUG_MAX_LENGTH) -> str:
    """
    URL slug for `title`: ASCII-folded, lowercase, hyphen separated, at most
    `max_length` chars. A `-n` suffix is appended while the slug is in `existing`.
    """
    folded = unicodedata.normalize("NFKD", title or "").encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9\s-]", "", folded.lower().strip())
    slug = re.sub(r"-+", "-", re.sub(r"\s+", "-", slug)).strip("-")

    if len(slug) > max_length:
        cut = slug.rfind("-", 0, max_length + 1)
        slug = slug[:cut] if cut > max_length / 2 else slug[:max_length]
        slug = slug.strip("-")
    if not slug:
        slug = "untitled"

    taken = set(existing)
    candidate = slug
    counter = 1
    while candidate in taken and counter <= 1000:
        suffix = f"-{counter}"
        base = slug[: max_length - len(suffix)]
        candidate = f"{base}{suffix}"
        counter += 1
    return candidate


def read_time_minutes(content: str, *, words_per_minute: int = WORDS_PER_MINUTE) -> int:
    words = [w for w in plain_text(content).split(" ") if w]
    return max(1, math.ceil(len(words) / words_per_minute))


def make_excerpt(content: str, max_length: int = EXCERPT_MAX_LENGTH) -> str:
    text = plain_text(content)
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    sentence_end = max(truncated.rfind("."), truncated.rfind("!"), truncated.rfind("?"))
    if sentence_end > max_length / 2:
        return truncated[: sentence_end + 1].strip()
    last_space = truncated.rfind(" ")
    if last_space > max_length / 2:
        return truncated[:last_space].strip() + "..."
    return truncated.strip() + "..."


def normalize_tags(tags: Iterable[str] | None) -> list[str]:
    return sorted({t.strip().lower() for t in (tags or []) if isinstance(t, str) and t.strip()})
