"""Field kinds and the per-kind strategies used by extract, compose and bind.

Every schema ``type`` string resolves to exactly one :class:`FieldKind`; the
kind's strategy is looked up once per field instead of re-checking the type
string at each call site. Unknown types resolve to ``TEXT``.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from bs4 import NavigableString, Tag

from daas import dom
from daas.tokens import token

EMPTY_EDITOR_VALUE = "<p><br></p>"


class FieldKind(str, Enum):
    TEXT = "text"
    LONGTEXT = "longtext"
    RICHTEXT = "richtext"
    IMAGE = "image"
    URL = "url"
    SELECT = "select"
    BOOLEAN = "boolean"
    NUMBER = "number"
    DATE = "date"

    @classmethod
    def parse(cls, value: Optional[str]) -> "FieldKind":
        try:
            return cls((value or "text").strip().lower())
        except ValueError:
            return cls.TEXT

    @property
    def strategy(self) -> "FieldStrategy":
        return _STRATEGIES.get(self, _DEFAULT_STRATEGY)


class FieldStrategy:
    html_value = False

    def to_text(self, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, list):
            return ", ".join(str(item) for item in value)
        if isinstance(value, dict):
            return str(value.get("existingUrl") or "")
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def is_empty(self, value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, (list, dict)):
            return len(value) == 0
        return str(value).strip() == ""

    def read(self, element: Tag, key: str, captures: Dict[str, str]) -> Any:
        value = element.get_text().strip()
        if element.get("data-daas-multiple") == "true":
            return split_multi(value)
        return value

    def substitute(self, node: NavigableString, key: str, value: Any) -> Optional[Tag]:
        """Replace ``[[key]]`` inside ``node``; returns the element that now holds the value."""
        raw = token(key)
        text = str(node)
        if raw not in text:
            return None
        parent = node.parent
        node.replace_with(NavigableString(text.replace(raw, self.to_text(value))))
        return parent


class RichTextStrategy(FieldStrategy):
    html_value = True

    def is_empty(self, value: Any) -> bool:
        return super().is_empty(value) or str(value).strip() == EMPTY_EDITOR_VALUE

    def read(self, element: Tag, key: str, captures: Dict[str, str]) -> Any:
        captured = captures.get(key)
        if captured is not None:
            return captured.strip()
        return dom.inner_html(element).strip()

    def substitute(self, node: NavigableString, key: str, value: Any) -> Optional[Tag]:
        raw = token(key)
        text = str(node)
        if raw not in text:
            return None
        parent = node.parent
        html = self.to_text(value)
        pieces = text.split(raw)
        for index, piece in enumerate(pieces):
            if piece:
                node.insert_before(NavigableString(piece))
            if index < len(pieces) - 1:
                for fragment in self._fragment_for(parent, html):
                    node.insert_before(fragment)
        node.extract()
        return parent

    def _fragment_for(self, parent: Optional[Tag], html: str) -> List:
        nodes = dom.parse_fragment(html)
        if parent is None or parent.name != "p":
            return nodes
        meaningful = [
            item for item in nodes
            if not (isinstance(item, NavigableString) and not item.strip())
        ]
        if len(meaningful) == 1 and isinstance(meaningful[0], Tag) and meaningful[0].name == "p":
            # A paragraph inside a paragraph is invalid; keep only its content.
            return [child.extract() for child in list(meaningful[0].contents)]
        return nodes


class UrlStrategy(FieldStrategy):
    def read(self, element: Tag, key: str, captures: Dict[str, str]) -> Any:
        if element.name == "a" and element.get("href") is not None:
            return element.get("href", "").strip()
        return element.get_text().strip()


class ImageStrategy(FieldStrategy):
    def to_text(self, value: Any) -> str:
        if isinstance(value, dict):
            return str(value.get("existingUrl") or value.get("dataUrl") or "")
        return super().to_text(value)

    def read(self, element: Tag, key: str, captures: Dict[str, str]) -> Any:
        img = element if element.name == "img" else element.find("img")
        if img is None or not img.get("src"):
            return None
        return {"existingUrl": img.get("src"), "alt": img.get("alt", "")}


def split_multi(value: str) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


_DEFAULT_STRATEGY = FieldStrategy()

_STRATEGIES: Dict[FieldKind, FieldStrategy] = {
    FieldKind.RICHTEXT: RichTextStrategy(),
    FieldKind.URL: UrlStrategy(),
    FieldKind.IMAGE: ImageStrategy(),
}


def strategy_for(type_name: Optional[str]) -> FieldStrategy:
    return FieldKind.parse(type_name).strategy
