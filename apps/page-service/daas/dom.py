import logging
from typing import Iterable, Iterator, List, Optional

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter

logger = logging.getLogger(__name__)

SKIP_TEXT_PARENTS = {"script", "style", "template"}


class SourceOrderFormatter(HTMLFormatter):
    """Serialise without re-sorting attributes and without XHTML-style void tags."""

    def __init__(self) -> None:
        super().__init__(
            entity_substitution=EntitySubstitution.substitute_xml,
            void_element_close_prefix=None,
        )

    def attributes(self, tag: Tag):
        if tag.attrs is None:
            return []
        return list(tag.attrs.items())


FORMATTER = SourceOrderFormatter()


def parse(html: str) -> BeautifulSoup:
    # Keep class as a plain string so it is written back exactly as read.
    return BeautifulSoup(html or "", "html.parser", multi_valued_attributes=None)


def parse_fragment(html: str) -> List:
    """Parse ``html`` and detach its top-level nodes for insertion elsewhere."""
    soup = parse(html)
    return [node.extract() for node in list(soup.contents)]


def render(node) -> str:
    if isinstance(node, NavigableString):
        return node.output_ready(FORMATTER)
    return node.decode(formatter=FORMATTER)


def inner_html(tag: Tag) -> str:
    return tag.decode_contents(formatter=FORMATTER)


def set_inner_html(tag: Tag, html: str) -> None:
    tag.clear()
    for node in parse_fragment(html):
        tag.append(node)


def class_names(tag: Tag) -> List[str]:
    value = tag.get("class")
    if not value:
        return []
    if isinstance(value, list):
        return value
    return value.split()


def has_class(tag: Tag, name: str) -> bool:
    return name in class_names(tag)


def is_classed(node) -> bool:
    return isinstance(node, Tag) and bool(class_names(node))


def iter_text_nodes(root) -> Iterator[NavigableString]:
    """Yield visible text nodes under ``root`` in document order."""
    for node in list(root.descendants):
        if not isinstance(node, NavigableString) or isinstance(node, Comment):
            continue
        if type(node) is not NavigableString:
            # CData, doctype, processing instructions and the like.
            continue
        parent = node.parent
        if parent is not None and parent.name in SKIP_TEXT_PARENTS:
            continue
        yield node


def text_children(tag: Tag) -> List[NavigableString]:
    return [child for child in tag.contents if type(child) is NavigableString]


def text_outline(tag: Tag) -> str:
    """Direct text of ``tag`` with every child element reduced to ``<name>``."""
    parts = []
    for child in tag.contents:
        if isinstance(child, Tag):
            parts.append(f"<{child.name}>")
        elif type(child) is NavigableString:
            parts.append(str(child))
    return "".join(parts)


def first_text_child(tag: Tag) -> Optional[NavigableString]:
    children = text_children(tag)
    return children[0] if children else None


def element_children(tag) -> List[Tag]:
    return [child for child in tag.contents if isinstance(child, Tag)]


def is_attached(node, root) -> bool:
    return any(parent is root for parent in node.parents)


def remove(node) -> None:
    if node is not None and node.parent is not None:
        node.extract()


def content_root(soup: BeautifulSoup):
    """The main content area: ``<main>`` when present, otherwise the fragment root."""
    main = soup.find("main")
    return main if main is not None else soup


def first_element(soup: BeautifulSoup) -> Optional[Tag]:
    for child in soup.contents:
        if isinstance(child, Tag):
            return child
    return None


def query_attr(root, attr: str, value: Optional[str] = None) -> List[Tag]:
    if value is None:
        return root.find_all(attrs={attr: True})
    return root.find_all(attrs={attr: value})


def append_keys(existing: Optional[str], keys: Iterable[str]) -> str:
    merged = [key for key in (existing or "").split(",") if key]
    for key in keys:
        if key and key not in merged:
            merged.append(key)
    return ",".join(merged)
