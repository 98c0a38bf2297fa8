import sys
import unittest
from pathlib import Path

PAGE_SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(PAGE_SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(PAGE_SERVICE_ROOT))

from daas import dom  # noqa: E402
from daas.live_binder import LiveBinder  # noqa: E402


def _binder(html):
    return LiveBinder(dom.parse(html))


class ExactBindingTests(unittest.TestCase):
    def test_first_bind_tags_element_and_later_binds_reuse_it(self):
        binder = _binder("<h1>[[title]]</h1>")

        self.assertEqual(binder.bind("title", "Hello"), 1)
        self.assertEqual(dom.render(binder.document), '<h1 data-daas-placeholder="title">Hello</h1>')

        self.assertEqual(binder.bind("title", "Hello again"), 1)
        self.assertEqual(binder.document.h1.get_text(), "Hello again")
        self.assertEqual(binder.value_of("title"), "Hello again")

    def test_binding_is_idempotent(self):
        binder = _binder('<div class="hero"><h1>[[title]]</h1><p>Hi [[name]]!</p></div>')
        binder.bind("title", "T")
        binder.bind("name", "Ann")
        first = dom.render(binder.document)
        binder.bind("title", "T")
        binder.bind("name", "Ann")
        self.assertEqual(dom.render(binder.document), first)

    def test_empty_value_shows_the_token_again(self):
        binder = _binder("<h1>[[title]]</h1>")
        binder.bind("title", "Hello")
        binder.bind("title", "")
        self.assertEqual(binder.document.h1.get_text(), "[[title]]")
        self.assertEqual(binder.value_of("title"), "")

    def test_richtext_is_written_as_markup(self):
        binder = _binder("<div>[[body]]</div>")
        binder.bind("body", "<p>One <em>two</em></p>", "richtext")
        self.assertEqual(binder.document.div.em.get_text(), "two")
        binder.bind("body", "<p>Three</p>", "richtext")
        self.assertEqual(binder.document.div.decode_contents(), "<p>Three</p>")

    def test_unknown_key_updates_nothing(self):
        binder = _binder("<h1>[[title]]</h1>")
        self.assertEqual(binder.bind("subtitle", "x"), 0)


class PartialBindingTests(unittest.TestCase):
    def test_literal_text_is_preserved_across_updates(self):
        binder = _binder("<p>Hello [[name]]!</p>")
        binder.bind("name", "Ann")
        self.assertEqual(binder.document.p.get_text(), "Hello Ann!")
        self.assertEqual(binder.document.p["data-daas-original-text"], "Hello [[name]]!")
        binder.bind("name", "Bob")
        self.assertEqual(binder.document.p.get_text(), "Hello Bob!")

    def test_two_keys_share_one_element(self):
        binder = _binder("<p>[[a]] and [[b]]</p>")
        binder.bind("a", "1")
        self.assertEqual(binder.document.p.get_text(), "1 and [[b]]")
        binder.bind("b", "2")
        self.assertEqual(binder.document.p.get_text(), "1 and 2")
        binder.bind("a", "3")
        self.assertEqual(binder.document.p.get_text(), "3 and 2")
        self.assertEqual(binder.document.p["data-daas-placeholder-partial"], "a,b")

    def test_updates_land_in_the_bound_text_node(self):
        binder = _binder("<p>Intro <b>bold</b> then [[k]]</p>")
        binder.bind("k", "X")
        binder.bind("k", "Y")
        self.assertEqual(binder.document.p.get_text(), "Intro bold then Y")
        self.assertEqual(binder.document.p.b.get_text(), "bold")

    def test_placeholders_in_separate_text_nodes_update_independently(self):
        binder = _binder("<p>Hi [[a]]<br>Bye [[b]]</p>")
        self.assertEqual(binder.bind("a", "Ann"), 1)
        self.assertEqual(binder.bind("b", "Bob"), 1)
        self.assertEqual(binder.document.p.get_text(), "Hi AnnBye Bob")

        binder.bind("b", "Bea")
        binder.bind("a", "Al")
        self.assertEqual(binder.document.p.get_text(), "Hi AlBye Bea")
        self.assertIsNotNone(binder.document.p.br)

    def test_sole_placeholders_split_by_a_break_are_not_exact(self):
        binder = _binder("<p>[[a]]<br>[[b]]</p>")
        binder.bind("a", "A")
        binder.bind("b", "B")
        binder.bind("a", "A2")
        self.assertEqual(dom.inner_html(binder.document.p), "A2<br>B")


class UrlAndImageBindingTests(unittest.TestCase):
    def test_href_is_rendered_from_its_pristine_copy(self):
        binder = _binder('<a href="https://x.test/[[slug]]?s=%5B%5Bsrc%5D%5D">go</a>')
        binder.bind("slug", "abc", "url")
        binder.bind("src", "mail list", "url")
        self.assertEqual(binder.document.a["href"], "https://x.test/abc?s=mail%20list")
        binder.bind("slug", "def", "url")
        self.assertEqual(binder.document.a["href"], "https://x.test/def?s=mail%20list")
        binder.bind("slug", "", "url")
        self.assertEqual(binder.document.a["href"], "https://x.test/[[slug]]?s=mail%20list")
        self.assertEqual(binder.document.a.get_text(), "go")

    def test_image_placeholder_swaps_source(self):
        binder = _binder('<img src="/placeholder.png" alt="[[hero]]">')
        updated = binder.bind("hero", {"dataUrl": "data:image/png;base64,AAAA"}, "image")
        self.assertEqual(updated, 1)
        self.assertEqual(binder.document.img["src"], "data:image/png;base64,AAAA")
        binder.bind("hero", None, "image")
        self.assertEqual(binder.document.img["src"], "/placeholder.png")


class IndexTests(unittest.TestCase):
    def test_index_zero_falls_back_to_base_key(self):
        binder = _binder("<p>[[faq[].q]]</p>")
        self.assertEqual(binder.bind("faq[0].q", "Why?"), 1)
        self.assertEqual(binder.document.p.get_text(), "Why?")
        self.assertEqual(binder.document.p["data-daas-placeholder"], "faq[0].q")

    def test_tags_survive_a_reparse(self):
        binder = _binder("<h1>[[title]]</h1>")
        binder.bind("title", "Old")
        reparsed = dom.parse(dom.render(binder.document))
        binder.reindex(reparsed)
        self.assertEqual(binder.bind("title", "New"), 1)
        self.assertEqual(reparsed.h1.get_text(), "New")

    def test_partial_binding_survives_a_reparse(self):
        binder = _binder("<p>Intro <b>bold</b> then [[k]]</p>")
        binder.bind("k", "X")
        reparsed = dom.parse(dom.render(binder.document))
        self.assertEqual(reparsed.p["data-daas-original-position"], "2")
        binder.reindex(reparsed)
        self.assertEqual(binder.bind("k", "Y"), 1)
        self.assertEqual(reparsed.p.get_text(), "Intro bold then Y")

    def test_elements_for_includes_image_placeholders(self):
        binder = _binder('<h2>[[hero]]</h2><img src="/a.png" alt="[[hero]]">')
        binder.bind("hero", "Caption")
        names = sorted(element.name for element in binder.elements_for("hero"))
        self.assertEqual(names, ["h2", "img"])


if __name__ == "__main__":
    unittest.main()
