import copy
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from bs4 import NavigableString, Tag

from daas import dom
from daas.tokens import REPEAT_END_RE, REPEAT_START_RE, encode_component

logger = logging.getLogger(__name__)


def repeat_count(counts: Mapping[str, Any], name: str) -> int:
    """Item count for ``name``; missing, zero, negative or invalid counts become 1."""
    try:
        value = int(counts.get(name, 1))
    except (TypeError, ValueError):
        return 1
    return max(value, 1)


def normalize_counts(counts: Mapping[str, Any]) -> Dict[str, int]:
    return {name: repeat_count(counts, name) for name in counts}


def expand_repeaters(html: str, counts: Mapping[str, Any]) -> str:
    """Clone the rows between repeater delimiters ``counts[name]`` times.

    Delimiters are only recognised as sole-content direct children of a classed
    container (or of the fragment root), and a start only pairs with an end in
    the same container. Inside each clone ``[[name[].field]]`` becomes
    ``[[name[i].field]]``. The delimiter rows themselves are left in place.
    """
    soup = dom.parse(html)
    containers = [tag for tag in soup.find_all(True) if dom.is_classed(tag)]
    # Innermost first, so nested repeaters are already expanded when an outer
    # repeater clones its rows.
    containers.reverse()
    containers.append(soup)

    expanded = 0
    for container in containers:
        if container is not soup and not dom.is_attached(container, soup):
            continue
        expanded += _expand_container(container, counts)

    if expanded:
        logger.info("Expanded %d repeater region(s)", expanded)
    return dom.render(soup)


def _row_text(row) -> str:
    if isinstance(row, Tag):
        return row.get_text().strip()
    if type(row) is NavigableString:
        return str(row).strip()
    return ""


def _is_blank(row) -> bool:
    return not isinstance(row, Tag) and not _row_text(row)


def _expand_container(container, counts: Mapping[str, Any]) -> int:
    rows = list(container.contents)
    regions: List[Dict[str, Any]] = []

    for index, row in enumerate(rows):
        text = _row_text(row)
        if not text.startswith("[[@repeat"):
            continue
        start = REPEAT_START_RE.fullmatch(text)
        if start:
            regions.append({"name": start.group(1), "start": index, "end": None})
            continue
        end = REPEAT_END_RE.fullmatch(text)
        if end:
            region = next(
                (r for r in regions if r["name"] == end.group(1) and r["end"] is None),
                None,
            )
            if region is not None:
                region["end"] = index

    expanded = 0
    for region in regions:
        name = region["name"]
        if region["end"] is None:
            logger.warning("Repeater %s has no matching end delimiter; leaving it unexpanded", name)
            continue

        template = rows[region["start"] + 1:region["end"]]
        if all(_is_blank(row) for row in template):
            continue

        end_row = rows[region["end"]]
        count = repeat_count(counts, name)
        for item_index in range(count):
            for row in template:
                clone = _rewrite_indices(copy.copy(row), name, item_index)
                end_row.insert_before(clone)

        for row in template:
            row.extract()
        expanded += 1
        logger.debug("Repeater %s expanded to %d item(s)", name, count)

    return expanded


def _rewrite_indices(row, name: str, index: int):
    raw_pattern = re.compile(r"\[\[" + re.escape(name) + r"\[\]\.")
    raw_replacement = f"[[{name}[{index}]."
    encoded_pattern = re.compile(
        r"%5B%5B" + re.escape(encode_component(name)) + r"%5B%5D\.", re.IGNORECASE
    )
    encoded_replacement = f"%5B%5B{encode_component(name)}%5B{index}%5D."

    def rewrite(value: str) -> str:
        value = raw_pattern.sub(lambda _: raw_replacement, value)
        return encoded_pattern.sub(lambda _: encoded_replacement, value)

    if not isinstance(row, Tag):
        if type(row) is NavigableString:
            return NavigableString(rewrite(str(row)))
        return row

    for node in list(dom.iter_text_nodes(row)):
        updated = rewrite(str(node))
        if updated != str(node):
            node.replace_with(NavigableString(updated))

    for element in [row, *row.find_all(True)]:
        for attr, value in list(element.attrs.items()):
            if isinstance(value, str) and ("[[" in value or "%5B" in value.upper()):
                element[attr] = rewrite(value)

    return row


def _item_pattern(name: str, index: Optional[int] = None) -> re.Pattern:
    index_part = r"(\d+)" if index is None else str(index)
    return re.compile(r"^" + re.escape(name) + r"\[" + index_part + r"\]\.(.+)$")


def reindex_after_remove(form_data: Mapping[str, Any], name: str, removed_index: int) -> Dict[str, Any]:
    """Drop item ``removed_index`` of repeater ``name`` and shift later items down."""
    pattern = _item_pattern(name)
    updated: Dict[str, Any] = {}

    for key, value in form_data.items():
        match = pattern.match(key)
        if not match:
            updated[key] = value
            continue
        index = int(match.group(1))
        field_name = match.group(2)
        if index < removed_index:
            updated[key] = value
        elif index > removed_index:
            updated[f"{name}[{index - 1}].{field_name}"] = value

    return updated


def swap_items(form_data: Mapping[str, Any], name: str, index_a: int, index_b: int) -> Dict[str, Any]:
    """Exchange every field of items ``index_a`` and ``index_b``."""
    pattern_a = _item_pattern(name, index_a)
    pattern_b = _item_pattern(name, index_b)
    fields_a: Dict[str, Any] = {}
    fields_b: Dict[str, Any] = {}
    updated: Dict[str, Any] = {}

    for key, value in form_data.items():
        match_a = pattern_a.match(key)
        match_b = pattern_b.match(key)
        if match_a:
            fields_a[match_a.group(1)] = value
        elif match_b:
            fields_b[match_b.group(1)] = value
        else:
            updated[key] = value

    for field_name, value in fields_a.items():
        updated[f"{name}[{index_b}].{field_name}"] = value
    for field_name, value in fields_b.items():
        updated[f"{name}[{index_a}].{field_name}"] = value

    return updated
