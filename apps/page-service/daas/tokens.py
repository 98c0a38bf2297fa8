import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote, unquote

KEY_CHARS = r"[a-zA-Z0-9_.\[\]]+"

TOKEN_RE = re.compile(r"\[\[(" + KEY_CHARS + r"?)\]\](?!\])")
ENCODED_TOKEN_RE = re.compile(r"%5B%5B([a-zA-Z0-9_.%]+?)%5D%5D(?!%5D)", re.IGNORECASE)
REPEAT_START_RE = re.compile(r"\[\[@repeat\(([^)]+)\)\]\]")
REPEAT_END_RE = re.compile(r"\[\[@repeatend\(([^)]+)\)\]\]")
ANY_DELIMITER_RE = re.compile(r"\[\[@repeat(?:end)?\(([^)]+)\)\]\]")

INDEX_RE = re.compile(r"\[(\d+)\]")
REPEATER_KEY_RE = re.compile(r"^([^[]+)\[\]\.(.+)$")
INDEXED_KEY_RE = re.compile(r"^([^[]+)\[(\d+)\]\.(.+)$")

# Characters left alone by JavaScript's encodeURIComponent.
_URI_COMPONENT_SAFE = "-_.!~*'()"


def token(key: str) -> str:
    return f"[[{key}]]"


def encode_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def encoded_token(key: str) -> str:
    return encode_component(token(key))


def base_key(key: str) -> str:
    """Collapse the first repeater index: ``faq[2].q`` -> ``faq[].q``."""
    return INDEX_RE.sub("[]", key, count=1)


def is_index_zero(key: str) -> bool:
    return "[0]" in key


def zero_fallback_key(key: str) -> Optional[str]:
    """Base key to try for index-0 keys, ``None`` for everything else."""
    if not is_index_zero(key):
        return None
    return key.replace("[0]", "[]", 1)


def split_repeater_key(key: str) -> Optional[Tuple[str, str]]:
    match = REPEATER_KEY_RE.match(key)
    if not match:
        return None
    return match.group(1), match.group(2)


def split_indexed_key(key: str) -> Optional[Tuple[str, int, str]]:
    match = INDEXED_KEY_RE.match(key)
    if not match:
        return None
    return match.group(1), int(match.group(2)), match.group(3)


def indexed_key(name: str, index: int, field_name: str) -> str:
    return f"{name}[{index}].{field_name}"


def find_keys(text: str) -> List[str]:
    """Return every placeholder key in ``text`` in order of appearance.

    Both literal and percent-encoded tokens are recognised; encoded keys are
    returned decoded.
    """
    if not text:
        return []
    found: List[Tuple[int, str]] = []
    for match in TOKEN_RE.finditer(text):
        found.append((match.start(), match.group(1)))
    for match in ENCODED_TOKEN_RE.finditer(text):
        found.append((match.start(), unquote(match.group(1))))
    found.sort(key=lambda item: item[0])
    return [key for _, key in found]


def distinct(keys: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(keys))


def has_token(text: str) -> bool:
    return bool(text) and (TOKEN_RE.search(text) is not None or ENCODED_TOKEN_RE.search(text) is not None)


def strip_tokens(text: str) -> str:
    """Remove every unfilled value token, raw or percent-encoded."""
    if not text:
        return text
    return ENCODED_TOKEN_RE.sub("", TOKEN_RE.sub("", text))


def replace_token(text: str, key: str, value: str) -> Tuple[str, int]:
    """Replace the raw token with ``value`` and the encoded token with the encoded value."""
    raw = token(key)
    encoded = encoded_token(key)
    count = text.count(raw)
    updated = text.replace(raw, value)
    encoded_count = updated.count(encoded)
    if encoded_count:
        updated = updated.replace(encoded, encode_component(value) if value else "")
    return updated, count + encoded_count


def template_id(path: str) -> str:
    """djb2 digest of ``path`` as unsigned 32-bit hex. Grouping only, not unique."""
    value = 5381
    for char in path or "":
        value = ((value << 5) + value + ord(char)) & 0xFFFFFFFF
    return format(value, "x")
