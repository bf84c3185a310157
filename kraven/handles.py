import re
from typing import Any, Iterator, Mapping, Optional

PRIORITY_FIELDS = (
    "x_handle",
    "xHandle",
    "twitter_handle",
    "twitterHandle",
    "requestor_handle",
    "requestorHandle",
    "username",
    "handle",
)
CONTEXT_FIELDS = ("social_context", "requestor", "context", "metadata", "creator")
RESERVED_PATH_SEGMENT = "i"
MAX_CONTEXT_DEPTH = 6

HANDLE_RE = re.compile(r"^[a-z0-9_]{1,50}$")
PROFILE_URL_RE = re.compile(
    r"(?:^|[^A-Za-z0-9_-])(?:www\.|mobile\.)?(?:twitter|x)\.com/([A-Za-z0-9_]{1,50})",
    re.IGNORECASE,
)


def handle_from_url(text: str) -> Optional[str]:
    for m in PROFILE_URL_RE.finditer(text):
        candidate = m.group(1).lower()
        if candidate != RESERVED_PATH_SEGMENT:
            return candidate
    return None


def normalize_handle(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value:
        return None
    if PROFILE_URL_RE.search(value):
        value = handle_from_url(value) or ""
    if value.startswith("@"):
        value = value[1:]
    value = value.strip().lower()
    if not HANDLE_RE.match(value):
        return None
    return value


def parse_handle_input(text: str) -> Optional[str]:
    text = (text or "").strip()
    if not text or " " in text:
        return None
    return normalize_handle(text)


def _context_objects(record: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    for name in CONTEXT_FIELDS:
        nested = record.get(name)
        if isinstance(nested, Mapping):
            yield nested


def _explicit_handle(record: Mapping[str, Any], depth: int) -> Optional[str]:
    for name in PRIORITY_FIELDS:
        handle = normalize_handle(record.get(name))
        if handle:
            return handle
    if depth >= MAX_CONTEXT_DEPTH:
        return None
    for nested in _context_objects(record):
        handle = _explicit_handle(nested, depth + 1)
        if handle:
            return handle
    return None


def _embedded_handle(record: Mapping[str, Any], depth: int) -> Optional[str]:
    for value in record.values():
        if isinstance(value, str):
            handle = handle_from_url(value)
            if handle:
                return handle
    if depth >= MAX_CONTEXT_DEPTH:
        return None
    for nested in _context_objects(record):
        handle = _embedded_handle(nested, depth + 1)
        if handle:
            return handle
    return None


def extract_handle(record: Any) -> Optional[str]:
    """Find the most plausible X handle in an indexer record.

    Explicit handle fields win over profile URLs found in free text, at any
    nesting level, because a bio can link to somebody else's profile.
    """
    if not isinstance(record, Mapping):
        return None
    return _explicit_handle(record, 0) or _embedded_handle(record, 0)
