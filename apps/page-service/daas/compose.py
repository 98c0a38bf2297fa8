import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag

from daas import dom
from daas.field_types import FieldKind, FieldStrategy, strategy_for
from daas.models import FieldSchema
from daas.repeaters import expand_repeaters
from daas.schema import SCHEMA_BLOCK_CLASS, field_for_key, field_map
from daas.tokens import (
    ANY_DELIMITER_RE,
    base_key,
    distinct,
    encoded_token,
    find_keys,
    has_token,
    replace_token,
    strip_tokens,
    template_id,
    token,
)

logger = logging.getLogger(__name__)

KEY_ATTR = "data-daas-key"
TYPE_ATTR = "data-daas-type"
TEMPLATE_ATTR = "data-daas-template"
TEMPLATE_PATH_ATTR = "data-daas-template-path"
TEMPLATE_ID_ATTR = "data-daas-template-id"

# Attributes that may carry a value token; each gets its own key/template pair.
VALUE_ATTRS = ("href", "alt", "src")
ROOT_TAGS = {"main", "body", "html"}

_ADJACENT_TOKENS_RE = re.compile(r"\]\]\s*\[\[")

SourceFetcher = Callable[[Optional[str]], Optional[str]]


def attr_key_name(attr: str) -> str:
    return f"data-daas-{attr}-key"


def attr_template_name(attr: str) -> str:
    return f"data-daas-{attr}-template"


def field_attributes(field: Optional[FieldSchema]) -> List[Tuple[str, str]]:
    """Schema metadata written next to a value, in a fixed order."""
    if field is None:
        return [(TYPE_ATTR, FieldKind.TEXT.value)]
    attrs = [(TYPE_ATTR, field.type or FieldKind.TEXT.value)]
    if field.label:
        attrs.append(("data-daas-label", field.label))
    if field.required:
        attrs.append(("data-daas-required", "true"))
    if field.default:
        attrs.append(("data-daas-default", field.default))
    if field.options:
        attrs.append(("data-daas-options", field.options))
    if field.multiple:
        attrs.append(("data-daas-multiple", "true"))
    if field.min:
        attrs.append(("data-daas-min", field.min))
    if field.max:
        attrs.append(("data-daas-max", field.max))
    if field.pattern:
        attrs.append(("data-daas-pattern", field.pattern))
    return attrs


class _TextTemplate(NamedTuple):
    element: Tag
    template: str
    keys: List[str]
    rich_key: Optional[str]


def _field_type(fields: Mapping[str, FieldSchema], key: str) -> Optional[str]:
    field = field_for_key(fields, key)
    return field.type if field else None


class _Pipeline:
    """Working state for one compose run over a detached document."""

    def __init__(self, soup: BeautifulSoup, fields: Mapping[str, FieldSchema]) -> None:
        self.soup = soup
        self.fields = fields
        self.text_templates: Dict[int, _TextTemplate] = {}
        self.attr_templates: Dict[Tuple[int, str], Tuple[Tag, str]] = {}
        self.placeholder_blocks: List[Tag] = []
        self.image_keys: set = set()

    # -- step 4 -------------------------------------------------------------

    def resolve_images(self, form_data: Mapping[str, Any], image_urls: Mapping[str, str]) -> None:
        for key, url, alt_text in self._image_sources(form_data, image_urls):
            raw = token(key)
            matched = 0
            for img in self.soup.find_all("img", alt=True):
                if raw not in img.get("alt", ""):
                    continue
                img["src"] = url
                img["alt"] = alt_text
                picture = img.parent
                if isinstance(picture, Tag) and picture.name == "picture":
                    for source in picture.find_all("source"):
                        source["srcset"] = url
                self.stamp(img, key)
                matched += 1
            self.image_keys.add(key)
            if not matched:
                logger.debug("No image placeholder found for %s", key)

    def _image_sources(self, form_data: Mapping[str, Any], image_urls: Mapping[str, str]):
        seen = set()
        for key, url in image_urls.items():
            if url:
                seen.add(key)
                value = form_data.get(key)
                alt_text = value.get("alt", "") if isinstance(value, dict) else ""
                yield key, url, alt_text or ""
        for key, value in form_data.items():
            if key in seen:
                continue
            if isinstance(value, dict):
                if value.get("existingUrl"):
                    yield key, value["existingUrl"], value.get("alt") or ""
                continue
            field = field_for_key(self.fields, key)
            if field is not None and FieldKind.parse(field.type) is FieldKind.IMAGE and value:
                yield key, str(value), ""

    # -- step 5 -------------------------------------------------------------

    def record_templates(self) -> None:
        """Capture original strings before any value is written into them."""
        blocks: Dict[int, Tag] = {}

        for node in dom.iter_text_nodes(self.soup):
            text = str(node)
            keys = find_keys(text)
            if not keys:
                continue
            parent = node.parent
            self._note_blocks(parent, blocks)
            if parent is None or id(parent) in self.text_templates:
                continue
            sole = len(distinct(keys)) == 1 and text.strip() == token(keys[0]) == parent.get_text().strip()
            if not sole:
                self.text_templates[id(parent)] = self._text_template(parent)
                self._warn_adjacent(self.text_templates[id(parent)].template)

        for element in self.soup.find_all(True):
            for attr in VALUE_ATTRS:
                value = element.get(attr)
                if not isinstance(value, str):
                    continue
                keys = find_keys(value)
                if not keys:
                    continue
                self._note_blocks(element, blocks)
                whole = value.strip() in (token(keys[0]), encoded_token(keys[0]))
                if len(distinct(keys)) > 1 or not whole:
                    self.attr_templates[(id(element), attr)] = (element, value)
                    self._warn_adjacent(value)

        # Deepest first, so nested blocks are judged before their parents.
        self.placeholder_blocks = sorted(
            blocks.values(), key=lambda block: len(list(block.parents)), reverse=True
        )

    def _text_template(self, element: Tag) -> _TextTemplate:
        """Template over every direct text node of ``element``.

        Rich-text values become markup once substituted, so an element holding
        one keeps its whole inner HTML; any other element keeps its text outline.
        """
        keys: List[str] = []
        for child in dom.text_children(element):
            keys.extend(find_keys(str(child)))
        keys = distinct(keys)
        rich_key = next(
            (key for key in keys if strategy_for(_field_type(self.fields, key)).html_value),
            None,
        )
        template = dom.inner_html(element) if rich_key else dom.text_outline(element)
        return _TextTemplate(element, template, [base_key(key) for key in keys], rich_key)

    def _note_blocks(self, element: Optional[Tag], blocks: Dict[int, Tag]) -> None:
        current = element
        while isinstance(current, Tag) and current is not self.soup:
            if current.name == "div" and dom.is_classed(current):
                blocks.setdefault(id(current), current)
            current = current.parent

    @staticmethod
    def _warn_adjacent(template: str) -> None:
        if _ADJACENT_TOKENS_RE.search(template):
            logger.warning("Adjacent placeholders without a separator; extraction is best-effort: %s", template[:200])

    # -- step 6 -------------------------------------------------------------

    def substitute(self, form_data: Mapping[str, Any]) -> int:
        touched = 0
        for key, value in form_data.items():
            if key in self.image_keys or isinstance(value, dict):
                continue
            strategy = strategy_for(_field_type(self.fields, key))
            try:
                touched += self._substitute_text(key, value, strategy)
                touched += self._substitute_attrs(key, value, strategy)
            except Exception:
                logger.exception("Failed to compose field %s; leaving it unfilled", key)
        return touched

    def _substitute_text(self, key: str, value: Any, strategy: FieldStrategy) -> int:
        raw = token(key)
        touched = 0
        for node in list(dom.iter_text_nodes(self.soup)):
            if raw not in str(node):
                continue
            holder = strategy.substitute(node, key, value)
            if holder is not None:
                self.stamp(holder, key)
                touched += 1
        return touched

    def _substitute_attrs(self, key: str, value: Any, strategy: FieldStrategy) -> int:
        raw = token(key)
        encoded = encoded_token(key)
        text_value = strategy.to_text(value)
        touched = 0
        for attr in VALUE_ATTRS:
            for element in self.soup.find_all(attrs={attr: True}):
                current = element.get(attr)
                if not isinstance(current, str) or (raw not in current and encoded not in current):
                    continue
                if attr == "alt":
                    element[attr] = current.replace(raw, text_value)
                else:
                    element[attr], _ = replace_token(current, key, text_value)
                self.stamp_attr(element, attr, key)
                touched += 1
        return touched

    # -- metadata -----------------------------------------------------------

    def stamp(self, element: Tag, key: str) -> None:
        recorded = self.text_templates.get(id(element))
        if recorded is not None and recorded.element is not element:
            recorded = None
        keys = list(recorded.keys) if recorded is not None else []
        keys.append(base_key(key))
        element[KEY_ATTR] = dom.append_keys(element.get(KEY_ATTR), keys)
        field_key = recorded.rich_key if recorded is not None and recorded.rich_key else key
        for name, value in field_attributes(field_for_key(self.fields, field_key)):
            if name not in element.attrs:
                element[name] = value
        if recorded is not None and TEMPLATE_ATTR not in element.attrs:
            element[TEMPLATE_ATTR] = recorded.template

    def stamp_attr(self, element: Tag, attr: str, key: str) -> None:
        key_name = attr_key_name(attr)
        template_name = attr_template_name(attr)
        recorded = self.attr_templates.get((id(element), attr))
        if recorded is not None:
            keys = [base_key(k) for k in distinct(find_keys(recorded[1]))]
        else:
            keys = [base_key(key)]
        element[key_name] = dom.append_keys(element.get(key_name), keys)
        if attr == "href":
            for name, value in field_attributes(field_for_key(self.fields, key)):
                if name not in element.attrs:
                    element[name] = value
        if recorded is not None and template_name not in element.attrs:
            element[template_name] = recorded[1]

    # -- steps 7 to 11 ------------------------------------------------------

    def remove_delimiters(self) -> int:
        removed = 0
        for node in list(dom.iter_text_nodes(self.soup)):
            if not dom.is_attached(node, self.soup):
                continue
            text = str(node)
            if not ANY_DELIMITER_RE.search(text):
                continue
            if ANY_DELIMITER_RE.fullmatch(text.strip()):
                dom.remove(self._delimiter_row(node))
            else:
                node.replace_with(NavigableString(ANY_DELIMITER_RE.sub("", text)))
            removed += 1
        return removed

    def _delimiter_row(self, node: NavigableString):
        """Outermost unclassed element holding nothing but this delimiter."""
        delimiter = str(node).strip()
        target = node
        parent = node.parent
        while (
            isinstance(parent, Tag)
            and parent is not self.soup
            and parent.name not in ROOT_TAGS
            and not dom.is_classed(parent)
            and parent.get_text().strip() == delimiter
            and len(dom.element_children(parent)) <= 1
            and parent.find(["img", "picture", "video", "iframe"]) is None
        ):
            target = parent
            parent = parent.parent
        return target

    def strip_unfilled(self) -> int:
        stripped = 0
        for node in list(dom.iter_text_nodes(self.soup)):
            text = str(node)
            if has_token(text):
                node.replace_with(NavigableString(strip_tokens(text)))
                stripped += 1
        for element in self.soup.find_all(True):
            for attr in VALUE_ATTRS:
                value = element.get(attr)
                if isinstance(value, str) and has_token(value):
                    element[attr] = strip_tokens(value)
                    stripped += 1
        return stripped

    def remove_empty_blocks(self) -> int:
        root = dom.content_root(self.soup)
        removed = 0
        for block in self.placeholder_blocks:
            if not dom.is_attached(block, self.soup):
                continue
            if root is not self.soup and not dom.is_attached(block, root):
                continue
            if dom.has_class(block, SCHEMA_BLOCK_CLASS) or not _is_empty_block(block):
                continue
            self._remove_with_wrapper(block)
            removed += 1
        return removed

    def remove_schema_block(self) -> bool:
        found = False
        for block in self.soup.find_all("div"):
            if dom.has_class(block, SCHEMA_BLOCK_CLASS) and dom.is_attached(block, self.soup):
                self._remove_with_wrapper(block)
                found = True
        return found

    def _remove_with_wrapper(self, block: Tag) -> None:
        wrapper = block.parent
        block.extract()
        if (
            isinstance(wrapper, Tag)
            and wrapper is not self.soup
            and wrapper.name == "div"
            and not wrapper.get("class")
            and not wrapper.get("style")
            and not dom.element_children(wrapper)
            and not wrapper.get_text().strip()
        ):
            wrapper.extract()

    def stamp_root(self, source_path: Optional[str]) -> None:
        if not source_path:
            return
        root = self.soup.find("main") or dom.first_element(self.soup)
        if root is None:
            return
        root[TEMPLATE_PATH_ATTR] = source_path
        root[TEMPLATE_ID_ATTR] = template_id(source_path)


def _is_empty_block(block: Tag) -> bool:
    if block.get_text().strip():
        return False
    if any(img.get("src") for img in block.find_all("img")):
        return False
    for link in block.find_all("a", href=True):
        href = link.get("href", "").strip()
        if href and not href.startswith("#"):
            return False
    return True


def compose_final_html(
    form_data: Mapping[str, Any],
    fields: Iterable[FieldSchema],
    image_urls: Optional[Mapping[str, str]] = None,
    *,
    fetch_source: SourceFetcher,
    source_path: Optional[str] = None,
    repeater_counts: Optional[Mapping[str, int]] = None,
) -> Optional[str]:
    """Produce the final, placeholder-free page.

    Always starts from the pristine source returned by ``fetch_source`` and
    re-expands repeaters with ``repeater_counts``, so the output never depends
    on what the live preview currently shows. Returns ``None`` when the source
    cannot be fetched.
    """
    source = fetch_source(source_path)
    if source is None:
        logger.error("Could not fetch source template %s", source_path or "<inline>")
        return None

    expanded = expand_repeaters(source, repeater_counts or {})
    soup = dom.parse(expanded)
    pipeline = _Pipeline(soup, field_map(fields))

    pipeline.resolve_images(form_data, image_urls or {})
    pipeline.record_templates()
    touched = pipeline.substitute(form_data)
    delimiters = pipeline.remove_delimiters()
    stripped = pipeline.strip_unfilled()
    emptied = pipeline.remove_empty_blocks()
    pipeline.remove_schema_block()
    pipeline.stamp_root(source_path)

    logger.info(
        "Composed %s: %d substitutions, %d delimiters removed, %d unfilled placeholders stripped, %d empty blocks removed",
        source_path or "<inline>",
        touched,
        delimiters,
        stripped,
        emptied,
    )
    return dom.render(soup)
