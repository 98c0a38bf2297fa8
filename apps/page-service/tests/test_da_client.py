import os
import sys
import unittest
from pathlib import Path
from unittest import mock

import requests

PAGE_SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(PAGE_SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(PAGE_SERVICE_ROOT))

from daas.da_client import (  # noqa: E402
    DAClient,
    decode_data_url,
    default_destination_path,
    is_valid_destination,
    page_url,
)

_ENV = {
    "DA_API_URL": "https://da.test",
    "DA_CONTENT_URL": "https://content.test",
    "AEM_ADMIN_URL": "https://admin.test",
    "DAAS_DEFAULT_REF": "main",
    "DA_REQUEST_TIMEOUT": "5",
}


def _response(status, text=""):
    response = mock.Mock()
    response.status_code = status
    response.text = text
    return response


class PathHelperTests(unittest.TestCase):
    def test_page_url(self):
        self.assertEqual(page_url("/acme/site/news/launch", ref="stage"), "https://stage--site--acme.aem.page/news/launch")
        self.assertIsNone(page_url("/acme/site"))

    def test_default_destination_appends_base36_millis(self):
        self.assertEqual(default_destination_path("/acme/site/tpl", now=1.0), "/acme/site/tpl-rs")
        self.assertEqual(default_destination_path(None), "")

    def test_destination_validation(self):
        self.assertTrue(is_valid_destination("/acme/site/page"))
        self.assertFalse(is_valid_destination("/acme/site"))
        self.assertFalse(is_valid_destination("acme/site/page"))
        self.assertFalse(is_valid_destination("/acme"))

    def test_decode_data_url(self):
        self.assertEqual(decode_data_url("data:image/png;base64,aGk="), ("image/png", b"hi"))
        self.assertEqual(decode_data_url("data:text/plain,a%20b"), ("text/plain", b"a b"))
        self.assertIsNone(decode_data_url("https://example.com/x.png"))


class DAClientTests(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch.dict(os.environ, _ENV)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_fetch_source(self):
        with mock.patch("daas.da_client.requests.get", return_value=_response(200, "<main></main>")) as get:
            html = DAClient("tok").fetch_source("/acme/site/tpl")
        self.assertEqual(html, "<main></main>")
        get.assert_called_once_with(
            "https://da.test/source/acme/site/tpl.html",
            headers={"Authorization": "Bearer tok"},
            timeout=5.0,
        )

    def test_fetch_source_failure_returns_none(self):
        with mock.patch("daas.da_client.requests.get", return_value=_response(404)):
            with self.assertLogs("daas.da_client", level="WARNING") as logs:
                self.assertIsNone(DAClient("tok").fetch_source("/acme/site/tpl"))
        self.assertIn("returned 404", logs.output[0])
        with mock.patch("daas.da_client.requests.get", side_effect=requests.ConnectionError("down")):
            self.assertIsNone(DAClient("tok").fetch_source("/acme/site/tpl"))

    def test_get_document_needs_token(self):
        with mock.patch("daas.da_client.requests.get") as get:
            self.assertIsNone(DAClient(None).get_document("/acme/site/page"))
        get.assert_not_called()

    def test_save_document_posts_html_as_multipart(self):
        with mock.patch("daas.da_client.requests.post", return_value=_response(201)) as post:
            result = DAClient("tok").save_document("/acme/site/page", "<main>x</main>")
        self.assertTrue(result.success)
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://da.test/source/acme/site/page.html")
        self.assertEqual(kwargs["files"]["data"], ("index.html", b"<main>x</main>", "text/html"))

    def test_save_document_keeps_status_on_failure(self):
        with mock.patch("daas.da_client.requests.post", return_value=_response(403)):
            result = DAClient("tok").save_document("/acme/site/page", "<main></main>")
        self.assertFalse(result.success)
        self.assertEqual(result.status, 403)
        self.assertEqual(result.error, "HTTP 403")

    def test_save_without_token(self):
        result = DAClient(None).save_document("/acme/site/page", "<main></main>")
        self.assertEqual(result.error, "No auth token")

    def test_upload_asset_goes_next_to_page(self):
        with mock.patch("daas.da_client.requests.post", return_value=_response(201)) as post:
            result = DAClient("tok").upload_asset("/acme/site/news/launch", "hero.png", "data:image/png;base64,aGk=")
        self.assertTrue(result.success)
        self.assertEqual(result.content_url, "https://content.test/acme/site/news/media/hero.png")
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://da.test/source/acme/site/news/media/hero.png")
        self.assertEqual(kwargs["files"]["data"], ("hero.png", b"hi", "image/png"))

    def test_upload_rejects_invalid_data_url(self):
        result = DAClient("tok").upload_asset("/acme/site/page", "x.png", "not-a-data-url")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Invalid data URL")

    def test_preview_document(self):
        with mock.patch("daas.da_client.requests.post", return_value=_response(200)) as post:
            result = DAClient("tok").preview_document("/acme/site/news/launch")
        self.assertTrue(result.success)
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://admin.test/preview/acme/site/main/news/launch")
        self.assertEqual(kwargs["headers"]["x-content-source-authorization"], "Bearer tok")

    def test_preview_rejects_short_path(self):
        result = DAClient("tok").preview_document("/acme/site")
        self.assertEqual(result.error, "Invalid path format")


if __name__ == "__main__":
    unittest.main()
