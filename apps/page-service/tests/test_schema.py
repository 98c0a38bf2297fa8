import sys
import unittest
from pathlib import Path

PAGE_SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(PAGE_SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(PAGE_SERVICE_ROOT))

from daas.models import FieldSchema  # noqa: E402
from daas.schema import (  # noqa: E402
    field_for_key,
    field_map,
    parse_schema_hierarchy,
    parse_template_schema,
    validate_required_fields,
)
from daas.tokens import base_key, find_keys, template_id  # noqa: E402

SCHEMA_HTML = (
    '<div class="template-schema">'
    "<div><div>Key</div><div>Label</div><div>Type</div><div>Required</div><div>Unknown</div></div>"
    "<div><div>hero.title</div><div>Title</div><div>text</div><div>true</div><div>x</div></div>"
    "<div><div>faq[].q</div><div>Question</div><div>LongText</div><div></div><div></div></div>"
    "<div><div></div><div>No key</div><div>text</div><div></div><div></div></div>"
    "<div><div>footer</div><div></div><div></div><div>no</div><div></div></div>"
    "</div>"
)


class SchemaHierarchyTests(unittest.TestCase):
    def test_splits_groups_repeaters_and_standalone(self):
        fields = [
            FieldSchema(key="hero.title"),
            FieldSchema(key="hero.subtitle"),
            FieldSchema(key="faq[].q"),
            FieldSchema(key="faq[].a"),
            FieldSchema(key="footer"),
        ]
        hierarchy = parse_schema_hierarchy(fields)

        self.assertEqual(list(hierarchy.groups), ["hero"])
        self.assertEqual([f.field_name for f in hierarchy.groups["hero"].fields], ["title", "subtitle"])
        self.assertEqual(list(hierarchy.repeaters), ["faq"])
        self.assertEqual([f.original_key for f in hierarchy.repeaters["faq"].fields], ["faq[].q", "faq[].a"])
        self.assertEqual([f.key for f in hierarchy.standalone], ["footer"])

    def test_repeater_pattern_wins_over_group_pattern(self):
        hierarchy = parse_schema_hierarchy([FieldSchema(key="items[].meta.note")])
        self.assertIn("items", hierarchy.repeaters)
        self.assertEqual(hierarchy.repeaters["items"].fields[0].field_name, "meta.note")
        self.assertEqual(hierarchy.groups, {})

    def test_malformed_keys_are_standalone(self):
        hierarchy = parse_schema_hierarchy([FieldSchema(key=".x"), FieldSchema(key="x.")])
        self.assertEqual(len(hierarchy.standalone), 2)


class TemplateSchemaBlockTests(unittest.TestCase):
    def test_reads_rows_under_lowercased_headers(self):
        fields = parse_template_schema(SCHEMA_HTML)

        self.assertEqual([f.key for f in fields], ["hero.title", "faq[].q", "footer"])
        self.assertEqual(fields[0].label, "Title")
        self.assertTrue(fields[0].required)
        self.assertEqual(fields[1].type, "longtext")
        self.assertFalse(fields[1].required)
        self.assertEqual(fields[2].type, "text")
        self.assertFalse(fields[2].required)

    def test_missing_block_yields_no_fields(self):
        self.assertEqual(parse_template_schema("<div class='hero'>[[x]]</div>"), [])

    def test_field_lookup_falls_back_to_base_key(self):
        fields = field_map(parse_template_schema(SCHEMA_HTML))
        self.assertEqual(field_for_key(fields, "faq[3].q").key, "faq[].q")
        self.assertIsNone(field_for_key(fields, "nope"))


class RequiredFieldTests(unittest.TestCase):
    def test_reports_missing_required_fields_by_label(self):
        fields = [
            FieldSchema(key="title", label="Title", required=True),
            FieldSchema(key="body", type="richtext", required=True),
            FieldSchema(key="note"),
        ]
        result = validate_required_fields(fields, {"title": "  ", "body": "<p><br></p>"})
        self.assertFalse(result.is_valid)
        self.assertEqual(result.missing_fields, ["Title", "body"])

    def test_repeater_field_needs_one_filled_item(self):
        fields = [FieldSchema(key="faq[].q", required=True)]
        self.assertFalse(validate_required_fields(fields, {"faq[0].q": ""}).is_valid)
        self.assertTrue(validate_required_fields(fields, {"faq[0].q": "", "faq[1].q": "Why?"}).is_valid)


class TokenTests(unittest.TestCase):
    def test_find_keys_reads_raw_and_encoded_tokens_in_order(self):
        text = "/p?a=%5B%5Bfirst%5D%5D&b=[[second]]&c=[[faq[0].q]]"
        self.assertEqual(find_keys(text), ["first", "second", "faq[0].q"])

    def test_base_key_collapses_first_index(self):
        self.assertEqual(base_key("faq[2].q"), "faq[].q")
        self.assertEqual(base_key("title"), "title")

    def test_template_id_is_stable_hex(self):
        self.assertEqual(template_id(""), "1505")
        self.assertEqual(template_id("/a"), template_id("/a"))
        self.assertNotEqual(template_id("/a"), template_id("/b"))


if __name__ == "__main__":
    unittest.main()
