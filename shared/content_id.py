"""
Content id parsing.

Accepts a bare 11-character YouTube id or any URL that carries one in a
watch query parameter, a youtu.be short link, or a /shorts/ path.
"""

import re
from typing import Optional

from shared.constants import AUDIO_KEY_PREFIX, AUDIO_KEY_SUFFIX, CONTENT_ID_LENGTH
from shared.errors import InvalidContentId

_ID_CHARS = r"[A-Za-z0-9_-]"
_BARE_ID = re.compile(rf"^{_ID_CHARS}{{{CONTENT_ID_LENGTH}}}$")
_URL_PATTERNS = (
    re.compile(rf"[?&]v=({_ID_CHARS}{{{CONTENT_ID_LENGTH}}})(?!{_ID_CHARS})"),
    re.compile(rf"youtu\.be/({_ID_CHARS}{{{CONTENT_ID_LENGTH}}})(?!{_ID_CHARS})"),
    re.compile(rf"/shorts/({_ID_CHARS}{{{CONTENT_ID_LENGTH}}})(?!{_ID_CHARS})"),
)


def is_valid_content_id(value: Optional[str]) -> bool:
    """True if this is exactly one bare content id."""
    if not value or not isinstance(value, str):
        return False
    return bool(_BARE_ID.match(value))


def extract_content_id(candidate: Optional[str]) -> Optional[str]:
    """Return the content id in ``candidate``, or None if there is none."""
    if not candidate or not isinstance(candidate, str):
        return None
    candidate = candidate.strip()
    if is_valid_content_id(candidate):
        return candidate
    for pattern in _URL_PATTERNS:
        match = pattern.search(candidate)
        if match:
            return match.group(1)
    return None


def parse_content_id(candidate: Optional[str]) -> str:
    """Like extract_content_id but raises InvalidContentId on failure."""
    content_id = extract_content_id(candidate)
    if content_id is None:
        raise InvalidContentId(f"Invalid video id: {candidate!r}")
    return content_id


def default_storage_key(content_id: str) -> str:
    """Canonical object key for a content id: ``audio/{id}.mp3``."""
    return f"{AUDIO_KEY_PREFIX}{content_id}{AUDIO_KEY_SUFFIX}"
