"""Live preview binding of form values onto a rendered document.

Elements are tagged the first time a value reaches them:

* ``data-daas-placeholder``: the element's text is exactly one token;
* ``data-daas-placeholder-partial``: the token sits inside literal text. Each
  bound text node keeps its pristine copy, keyed by its position among the
  element's children; the first one is mirrored into ``data-daas-original-text``
  and ``data-daas-original-position``;
* ``data-daas-href-key``: an anchor whose ``href`` carried the token, with the
  pristine ``href`` in ``data-daas-original-href``.

The tags stay in the document, so a re-parsed preview keeps its bindings, and
the binder mirrors them in an in-memory index that is rebuilt by
:meth:`LiveBinder.reindex` after structural changes only.
"""

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag

from daas import dom
from daas.field_types import FieldKind, strategy_for
from daas.tokens import encode_component, encoded_token, token, zero_fallback_key

logger = logging.getLogger(__name__)

EXACT_ATTR = "data-daas-placeholder"
PARTIAL_ATTR = "data-daas-placeholder-partial"
HREF_ATTR = "data-daas-href-key"
ORIGINAL_TEXT_ATTR = "data-daas-original-text"
ORIGINAL_HREF_ATTR = "data-daas-original-href"
ORIGINAL_SRC_ATTR = "data-daas-original-src"
ORIGINAL_POSITION_ATTR = "data-daas-original-position"

EXACT = "exact"
PARTIAL = "partial"
HREF = "href"
# Slot position of a rich-text snapshot covering the whole element.
WHOLE = -1
_KIND_ATTRS = {EXACT: EXACT_ATTR, PARTIAL: PARTIAL_ATTR, HREF: HREF_ATTR}


class BindingIndex:
    """Bidirectional key <-> element index, per binding kind."""

    def __init__(self) -> None:
        self._by_key: Dict[str, Dict[str, List[Tag]]] = {kind: {} for kind in _KIND_ATTRS}
        self._by_element: Dict[int, Tuple[Tag, Set[Tuple[str, str]]]] = {}

    def clear(self) -> None:
        for bucket in self._by_key.values():
            bucket.clear()
        self._by_element.clear()

    def add(self, kind: str, key: str, element: Tag) -> None:
        elements = self._by_key[kind].setdefault(key, [])
        if not any(existing is element for existing in elements):
            elements.append(element)
        _, bindings = self._by_element.setdefault(id(element), (element, set()))
        bindings.add((kind, key))

    def discard(self, kind: str, key: str, element: Tag) -> None:
        elements = self._by_key[kind].get(key, [])
        remaining = [existing for existing in elements if existing is not element]
        if remaining:
            self._by_key[kind][key] = remaining
        else:
            self._by_key[kind].pop(key, None)
        entry = self._by_element.get(id(element))
        if entry is not None:
            entry[1].discard((kind, key))

    def elements(self, kind: str, key: str) -> List[Tag]:
        return list(self._by_key[kind].get(key, []))

    def __len__(self) -> int:
        return len(self._by_element)


class LiveBinder:
    def __init__(self, document: BeautifulSoup) -> None:
        self.document = document
        self.index = BindingIndex()
        # element id -> {key: current value}, used to re-render shared snapshots
        self._values: Dict[int, Dict[str, str]] = {}
        # element id -> {child position (or WHOLE): pristine text}
        self._slots: Dict[int, Dict[int, str]] = {}
        self.reindex()

    def reindex(self, document: Optional[BeautifulSoup] = None) -> None:
        """Rebuild the index from the tags present in the document."""
        if document is not None:
            self.document = document
        self.index.clear()
        self._values.clear()
        self._slots.clear()
        for kind, attr in _KIND_ATTRS.items():
            for element in dom.query_attr(self.document, attr):
                for key in (element.get(attr) or "").split(","):
                    if key:
                        self.index.add(kind, key, element)
        for element in dom.query_attr(self.document, ORIGINAL_TEXT_ATTR):
            position = _stored_position(element)
            if position is not None:
                self._slots[id(element)] = {position: element[ORIGINAL_TEXT_ATTR]}
        logger.debug("Binding index rebuilt with %d elements", len(self.index))

    def bind(self, key: str, value: Any, field_type: Optional[str] = None) -> int:
        """Show ``value`` wherever ``key`` is displayed; returns the number of elements updated."""
        strategy = strategy_for(field_type)
        text = strategy.to_text(value)
        fallback = zero_fallback_key(key)

        kind = FieldKind.parse(field_type)
        if kind is FieldKind.URL:
            return self._bind_href(key, fallback, text)
        if kind is FieldKind.IMAGE:
            return self._bind_image(key, text)

        exact = self._take(EXACT, key, fallback)
        if exact:
            for element in exact:
                self._write(element, text or token(key), strategy.html_value)
            return len(exact)

        partial = self._take(PARTIAL, key, fallback)
        if partial:
            for element in partial:
                self._render_partial(element, key, text, strategy.html_value)
            return len(partial)

        return self._first_binding(key, fallback, text, strategy.html_value)

    # -- lookups --------------------------------------------------------------

    def _take(self, kind: str, key: str, fallback: Optional[str]) -> List[Tag]:
        """Elements bound to ``key`` (or, for index 0, the base key), re-tagged to ``key``."""
        elements = self.index.elements(kind, key)
        if elements or not fallback:
            return elements
        elements = self.index.elements(kind, fallback)
        for element in elements:
            self._retag(kind, element, fallback, key)
        return elements

    def _retag(self, kind: str, element: Tag, old_key: str, new_key: str) -> None:
        attr = _KIND_ATTRS[kind]
        keys = [new_key if item == old_key else item for item in (element.get(attr) or "").split(",") if item]
        element[attr] = ",".join(dict.fromkeys(keys))
        self.index.discard(kind, old_key, element)
        self.index.add(kind, new_key, element)
        values = self._values.get(id(element))
        if values is not None and old_key in values:
            values[new_key] = values.pop(old_key)

    def _tag(self, kind: str, element: Tag, key: str) -> None:
        attr = _KIND_ATTRS[kind]
        element[attr] = dom.append_keys(element.get(attr), [key])
        self.index.add(kind, key, element)

    # -- URL fields -------------------------------------------------------------

    def _bind_href(self, key: str, fallback: Optional[str], text: str) -> int:
        links = self._take(HREF, key, fallback)
        if not links:
            for link in self.document.find_all("a", href=True):
                href = link.get("href", "")
                if not _mentions(href, key, fallback, encoded=True):
                    continue
                if ORIGINAL_HREF_ATTR not in link.attrs:
                    link[ORIGINAL_HREF_ATTR] = href
                self._tag(HREF, link, key)
                links.append(link)
        for link in links:
            self._values.setdefault(id(link), {})[key] = text
            link["href"] = self._render(link.get(ORIGINAL_HREF_ATTR, ""), link, encode=True)
        return len(links)

    # -- images ---------------------------------------------------------------------

    def _bind_image(self, key: str, src: str) -> int:
        images = [element for element in self.elements_for(key) if element.name == "img"]
        for img in images:
            if ORIGINAL_SRC_ATTR not in img.attrs:
                img[ORIGINAL_SRC_ATTR] = img.get("src", "")
            img["src"] = src or img[ORIGINAL_SRC_ATTR]
        return len(images)

    # -- text ---------------------------------------------------------------------

    def _render_partial(self, element: Tag, key: str, text: str, as_html: bool) -> None:
        if not self._slots.get(id(element)):
            first = _meaningful_text_child(element)
            if as_html or first is None:
                self._add_slot(element, None)
            else:
                self._add_slot(element, first)
        self._values.setdefault(id(element), {})[key] = text
        self._render_slots(element)

    def _add_slot(self, element: Tag, node: Optional[NavigableString]) -> None:
        """Keep the pristine copy of ``node`` (or of the whole element when ``None``)."""
        slots = self._slots.setdefault(id(element), {})
        if node is None:
            if WHOLE in slots:
                return
            position, snapshot = WHOLE, dom.inner_html(element)
        else:
            position = _position_of(element, node)
            if position in slots:
                return
            snapshot = str(node)
        slots[position] = snapshot
        if ORIGINAL_TEXT_ATTR not in element.attrs:
            element[ORIGINAL_TEXT_ATTR] = snapshot
            element[ORIGINAL_POSITION_ATTR] = str(position)

    def _render_slots(self, element: Tag) -> None:
        slots = self._slots.get(id(element), {})
        if WHOLE in slots:
            dom.set_inner_html(element, self._render(slots[WHOLE], element, encode=False))
            return
        for position, snapshot in slots.items():
            current = element.contents[position] if position < len(element.contents) else None
            if type(current) is not NavigableString:
                logger.debug("Bound text of <%s> moved; skipping its update", element.name)
                continue
            current.replace_with(NavigableString(self._render(snapshot, element, encode=False)))

    def _render(self, snapshot: str, element: Tag, encode: bool) -> str:
        """Substitute every value currently bound to ``element`` into its snapshot."""
        rendered = snapshot
        for bound_key, bound_value in self._values.get(id(element), {}).items():
            replacement = bound_value or token(bound_key)
            candidates = [bound_key]
            base = zero_fallback_key(bound_key)
            if base:
                candidates.append(base)
            for candidate in candidates:
                rendered = rendered.replace(token(candidate), replacement)
                if encode:
                    encoded_value = encode_component(bound_value) if bound_value else encoded_token(bound_key)
                    rendered = rendered.replace(encoded_token(candidate), encoded_value)
        return rendered

    def _write(self, element: Tag, text: str, as_html: bool) -> None:
        if as_html:
            dom.set_inner_html(element, text)
            return
        first = _meaningful_text_child(element)
        if first is not None:
            first.replace_with(NavigableString(text))
        elif element.contents:
            element.insert(0, NavigableString(text))
        else:
            element.append(NavigableString(text))

    def _first_binding(self, key: str, fallback: Optional[str], text: str, as_html: bool) -> int:
        updated = 0
        for node in list(dom.iter_text_nodes(self.document)):
            if not dom.is_attached(node, self.document):
                continue
            content = str(node)
            if token(key) in content:
                target = token(key)
            elif fallback and token(fallback) in content:
                target = token(fallback)
            else:
                continue
            parent = node.parent
            if not isinstance(parent, Tag) or parent is self.document:
                continue

            if content.strip() == target and parent.get_text().strip() == target:
                self._tag(EXACT, parent, key)
                if as_html:
                    dom.set_inner_html(parent, text or token(key))
                else:
                    node.replace_with(NavigableString(content.replace(target, text or token(key))))
            else:
                self._add_slot(parent, None if as_html else node)
                self._tag(PARTIAL, parent, key)
                self._values.setdefault(id(parent), {})[key] = text
                self._render_slots(parent)
            updated += 1

        if not updated:
            logger.debug("No placeholder for %s in the live document", key)
        return updated

    # -- queries ------------------------------------------------------------------

    def elements_for(self, key: str) -> List[Tag]:
        """Every element currently showing ``key``, including image placeholders."""
        found: List[Tag] = []
        keys = [key]
        fallback = zero_fallback_key(key)
        if fallback:
            keys.append(fallback)
        for candidate in keys:
            for kind in _KIND_ATTRS:
                found.extend(self.index.elements(kind, candidate))
            for img in self.document.find_all("img", alt=True):
                if img.get("alt") in (candidate, token(candidate)):
                    found.append(img)
        unique: List[Tag] = []
        for element in found:
            if not any(existing is element for existing in unique):
                unique.append(element)
        return unique

    def value_of(self, key: str) -> str:
        """Current value shown for an exactly bound key, ``""`` while the token still shows."""
        for element in self.index.elements(EXACT, key):
            content = element.get_text()
            if "[[" in content and "]]" in content:
                return ""
            return content
        return ""


def _mentions(text: str, key: str, fallback: Optional[str], encoded: bool) -> bool:
    for candidate in (key, fallback):
        if not candidate:
            continue
        if token(candidate) in text:
            return True
        if encoded and encoded_token(candidate) in text:
            return True
    return False


def _meaningful_text_child(element: Tag) -> Optional[NavigableString]:
    children = dom.text_children(element)
    for child in children:
        if child.strip():
            return child
    return children[0] if children else None


def _position_of(element: Tag, node: NavigableString) -> int:
    for position, child in enumerate(element.contents):
        if child is node:
            return position
    raise ValueError("node is not a child of element")


def _stored_position(element: Tag) -> Optional[int]:
    try:
        return int(element.get(ORIGINAL_POSITION_ATTR, ""))
    except ValueError:
        first = _meaningful_text_child(element)
        return _position_of(element, first) if first is not None else None
