import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from daas import dom
from daas.field_types import strategy_for
from daas.models import FieldGroup, FieldSchema, HierarchyField, SchemaHierarchy, ValidationResult
from daas.tokens import base_key

logger = logging.getLogger(__name__)

SCHEMA_BLOCK_CLASS = "template-schema"

REPEATER_PATTERN = re.compile(r"^([^[]+)\[\]\.(.+)$")
GROUP_PATTERN = re.compile(r"^([^.]+)\.(.+)$")


def parse_schema_hierarchy(fields: Iterable[FieldSchema]) -> SchemaHierarchy:
    """Split a flat field list into groups, repeaters and standalone fields.

    ``name[].field`` keys belong to repeater ``name`` and ``name.field`` keys to
    group ``name``; the repeater test runs first. Anything else, including
    malformed keys, is standalone.
    """
    hierarchy = SchemaHierarchy()

    for field in fields:
        key = field.key or ""

        repeater_match = REPEATER_PATTERN.match(key)
        if repeater_match:
            name, field_name = repeater_match.groups()
            repeater = hierarchy.repeaters.setdefault(name, FieldGroup(name=name))
            repeater.fields.append(_member(field, field_name))
            continue

        group_match = GROUP_PATTERN.match(key)
        if group_match:
            name, field_name = group_match.groups()
            group = hierarchy.groups.setdefault(name, FieldGroup(name=name))
            group.fields.append(_member(field, field_name))
            continue

        hierarchy.standalone.append(field)

    return hierarchy


def _member(field: FieldSchema, field_name: str) -> HierarchyField:
    return HierarchyField(**field.model_dump(), field_name=field_name, original_key=field.key)


def parse_template_schema(html: str) -> List[FieldSchema]:
    """Read field definitions out of the authoring-schema table block.

    The block is a ``div.template-schema`` whose first row holds column headers
    and every following row one field. Rows without a key are skipped.
    """
    soup = dom.parse(html)
    block = next(
        (tag for tag in soup.find_all("div") if dom.has_class(tag, SCHEMA_BLOCK_CLASS)),
        None,
    )
    if block is None:
        logger.warning("No template-schema block found")
        return []

    rows = [row for row in dom.element_children(block) if row.name == "div"]
    if len(rows) < 2:
        logger.warning("template-schema block has no field rows")
        return []

    headers = [cell.get_text().strip().lower() for cell in dom.element_children(rows[0])]
    fields: List[FieldSchema] = []

    for row in rows[1:]:
        cells = dom.element_children(row)
        raw: Dict[str, Any] = {}
        for index, header in enumerate(headers):
            if not header or index >= len(cells):
                continue
            value = cells[index].get_text().strip()
            if value:
                raw[header] = value
        if not raw.get("key"):
            continue
        known = {name: value for name, value in raw.items() if name in FieldSchema.model_fields}
        fields.append(FieldSchema(**known))

    logger.info("Parsed %d schema fields from template-schema block", len(fields))
    return fields


def field_map(fields: Iterable[FieldSchema]) -> Dict[str, FieldSchema]:
    mapping: Dict[str, FieldSchema] = {}
    for field in fields:
        mapping.setdefault(field.key, field)
    return mapping


def field_for_key(fields: Mapping[str, FieldSchema], key: str) -> Optional[FieldSchema]:
    return fields.get(key) or fields.get(base_key(key))


def validate_required_fields(fields: Iterable[FieldSchema], form_data: Mapping[str, Any]) -> ValidationResult:
    missing: List[str] = []

    for field in fields:
        if not field.required:
            continue
        strategy = strategy_for(field.type)
        if "[]" in field.key:
            prefix, _, suffix = field.key.partition("[]")
            pattern = re.compile(r"^" + re.escape(prefix) + r"\[\d+\]" + re.escape(suffix) + r"$")
            found = any(
                pattern.match(key) and not strategy.is_empty(value)
                for key, value in form_data.items()
            )
        else:
            found = not strategy.is_empty(form_data.get(field.key))
        if not found:
            missing.append(field.label or field.key)

    return ValidationResult(is_valid=not missing, missing_fields=missing)
