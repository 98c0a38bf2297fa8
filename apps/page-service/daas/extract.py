"""Recover form data from previously composed HTML.

Composed pages carry ``data-daas-*`` metadata on every element that received a
value (see :mod:`daas.compose`). Extraction reads that metadata back:

* rich-text values are captured from the raw markup before parsing, because a
  parser is free to repair invalid nesting inside them;
* elements whose value was embedded in a larger literal string carry that
  string as a template, which is turned into an anchored regex to pull each
  value back out;
* everything else is read by the strategy of the declared field kind.

Repeater keys are stored un-indexed (``faq[].q``) and get their index back from
document order.
"""

import html as html_lib
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

from bs4 import Tag

from daas import dom
from daas.field_types import FieldKind, strategy_for
from daas.models import ExtractResult
from daas.tokens import (
    ENCODED_TOKEN_RE,
    TOKEN_RE,
    base_key,
    distinct,
    indexed_key,
    split_indexed_key,
    split_repeater_key,
)

logger = logging.getLogger(__name__)

KEY_ATTR = "data-daas-key"
TYPE_ATTR = "data-daas-type"
TEMPLATE_ATTR = "data-daas-template"
VALUE_ATTRS = ("href", "alt", "src")

_ANY_TOKEN_RE = re.compile(TOKEN_RE.pattern + "|" + ENCODED_TOKEN_RE.pattern, re.IGNORECASE)
_OPEN_TAG_RE = re.compile(r"<([a-zA-Z][a-zA-Z0-9-]*)(\s[^<>]*)?>")
_ATTR_RE = r"""\s{name}\s*=\s*(?:"([^"]*)"|'([^']*)')"""

Slot = Tuple[str, bool]


def capture_richtext(raw_html: str) -> Dict[str, List[str]]:
    """Inner HTML of every rich-text element, keyed by its key, in document order."""
    captures: Dict[str, List[str]] = {}
    if not raw_html:
        return captures

    key_re = re.compile(_ATTR_RE.format(name=re.escape(KEY_ATTR)), re.IGNORECASE)
    type_re = re.compile(_ATTR_RE.format(name=re.escape(TYPE_ATTR)), re.IGNORECASE)

    for match in _OPEN_TAG_RE.finditer(raw_html):
        attrs = match.group(2) or ""
        if attrs.rstrip().endswith("/"):
            continue
        type_match = type_re.search(attrs)
        if not type_match or (type_match.group(1) or type_match.group(2) or "") != FieldKind.RICHTEXT.value:
            continue
        key_match = key_re.search(attrs)
        if not key_match:
            continue
        key = html_lib.unescape(key_match.group(1) or key_match.group(2) or "")
        if not key or "," in key:
            continue
        inner = _balanced_inner(raw_html, match.group(1), match.end())
        if inner is None:
            logger.warning("Unbalanced rich-text element for %s; falling back to parsed content", key)
            continue
        captures.setdefault(key, []).append(inner)

    return captures


def _balanced_inner(raw_html: str, tag_name: str, start: int) -> Optional[str]:
    tag_re = re.compile(r"<(/?)" + re.escape(tag_name) + r"\b[^>]*>", re.IGNORECASE)
    depth = 1
    for match in tag_re.finditer(raw_html, start):
        if match.group(1):
            depth -= 1
            if depth == 0:
                return raw_html[start:match.start()]
        elif not match.group(0).endswith("/>"):
            depth += 1
    return None


def template_regex(template: str) -> Tuple[re.Pattern, List[Slot]]:
    """Anchored regex for a stored template plus the key each group captures.

    Every ``[[key]]`` (or its percent-encoded form) becomes a lazy capture group;
    a key repeated in the template must repeat the same value.
    """
    parts: List[str] = []
    slots: List[Slot] = []
    group_names: Dict[Slot, str] = {}
    position = 0

    for match in _ANY_TOKEN_RE.finditer(template):
        parts.append(re.escape(template[position:match.start()]))
        if match.group(1) is not None:
            slot = (match.group(1), False)
        else:
            slot = (unquote(match.group(2)), True)
        if slot in group_names:
            parts.append(f"(?P={group_names[slot]})")
        else:
            name = f"g{len(slots)}"
            group_names[slot] = name
            slots.append(slot)
            parts.append(f"(?P<{name}>.*?)")
        position = match.end()

    parts.append(re.escape(template[position:]))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL), slots


def match_template(template: str, candidates: List[str]) -> Optional[List[Tuple[str, str]]]:
    pattern, slots = template_regex(template)
    if not slots:
        return None
    for candidate in candidates:
        match = pattern.match(candidate)
        if not match:
            continue
        values: List[Tuple[str, str]] = []
        for index, (key, encoded) in enumerate(slots):
            value = match.group(f"g{index}")
            values.append((key, unquote(value) if encoded else value))
        return values
    return None


def _split_keys(value: Optional[str]) -> List[str]:
    return distinct(key.strip() for key in (value or "").split(",") if key.strip())


def _next_capture(key: str, captures: Dict[str, List[str]], consumed: Dict[str, int]) -> Optional[str]:
    if key not in captures:
        return None
    position = consumed.get(key, 0)
    consumed[key] = position + 1
    if position < len(captures[key]):
        return captures[key][position]
    return None


def _template_values(
    element: Tag,
    keys: List[str],
    template: str,
    captures: Dict[str, List[str]],
    consumed: Dict[str, int],
) -> List[Tuple[str, Any]]:
    if strategy_for(element.get(TYPE_ATTR)).html_value:
        # rich-text templates are stored as inner HTML
        candidates = [dom.inner_html(element)]
        if len(keys) == 1:
            captured = _next_capture(keys[0], captures, consumed)
            if captured is not None:
                candidates.insert(0, captured)
        values = match_template(template, candidates)
        if values is not None:
            values = [(key, value if "<" in value else html_lib.unescape(value)) for key, value in values]
    else:
        candidates = [dom.text_outline(element)]
        candidates += [str(node) for node in dom.text_children(element)] + [element.get_text()]
        values = match_template(template, candidates)
    if values is None:
        logger.warning("Stored template for %s no longer matches its content; skipping", ",".join(keys))
        return []
    return values


def _text_values(element: Tag, captures: Dict[str, List[str]], consumed: Dict[str, int]) -> List[Tuple[str, Any]]:
    keys = _split_keys(element.get(KEY_ATTR))
    if not keys:
        return []

    template = element.get(TEMPLATE_ATTR)
    if template:
        return _template_values(element, keys, template, captures, consumed)

    if len(keys) > 1:
        texts = [str(node).strip() for node in dom.text_children(element) if str(node).strip()]
        if len(texts) != len(keys):
            logger.warning("Cannot separate values for %s without a template; skipping", ",".join(keys))
            return []
        return list(zip(keys, texts))

    key = keys[0]
    strategy = strategy_for(element.get(TYPE_ATTR))
    element_captures: Dict[str, str] = {}
    captured = _next_capture(key, captures, consumed)
    if captured is not None:
        element_captures[key] = captured
    value = strategy.read(element, key, element_captures)
    if value is None:
        return []
    return [(key, value)]


def _attr_values(element: Tag, attr: str) -> List[Tuple[str, Any]]:
    keys = _split_keys(element.get(f"data-daas-{attr}-key"))
    if not keys:
        return []
    current = element.get(attr, "")
    template = element.get(f"data-daas-{attr}-template")
    if template:
        values = match_template(template, [current])
        if values is None:
            logger.warning("Stored %s template for %s no longer matches; skipping", attr, ",".join(keys))
            return []
        return values
    if len(keys) > 1:
        logger.warning("Cannot separate %s values for %s without a template; skipping", attr, ",".join(keys))
        return []
    return [(keys[0], current.strip())]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return str(value).strip() == ""


def extract_form_data(html: str) -> ExtractResult:
    """Recover ``{form_data, repeater_counts}`` from composed HTML without mutating it."""
    captures = capture_richtext(html)
    soup = dom.parse(html)

    form_data: Dict[str, Any] = {}
    repeater_counts: Dict[str, int] = {}
    next_index: Dict[str, int] = {}
    consumed: Dict[str, int] = {}

    for element in soup.find_all(True):
        pairs: List[Tuple[str, Any]] = []
        if element.get(KEY_ATTR):
            pairs.extend(_text_values(element, captures, consumed))
        for attr in VALUE_ATTRS:
            pairs.extend(_attr_values(element, attr))
        if not pairs:
            continue

        element_indices: Dict[str, int] = {}
        for raw_key, value in pairs:
            key = _resolve_key(raw_key, element_indices, next_index)
            indexed = split_indexed_key(key)
            if indexed:
                name, index, _ = indexed
                repeater_counts[name] = max(repeater_counts.get(name, 0), index + 1)
            if key not in form_data or (_is_empty(form_data[key]) and not _is_empty(value)):
                form_data[key] = value

    logger.info(
        "Extracted %d field values and %d repeater counts",
        len(form_data),
        len(repeater_counts),
    )
    return ExtractResult(form_data=form_data, repeater_counts=repeater_counts)


def _resolve_key(raw_key: str, element_indices: Dict[str, int], next_index: Dict[str, int]) -> str:
    """Give repeater keys their document-order index, once per element."""
    repeater_key = base_key(raw_key)
    parts = split_repeater_key(repeater_key)
    if parts is None:
        return raw_key
    if repeater_key not in element_indices:
        element_indices[repeater_key] = next_index.get(repeater_key, 0)
        next_index[repeater_key] = element_indices[repeater_key] + 1
    name, field_name = parts
    return indexed_key(name, element_indices[repeater_key], field_name)
