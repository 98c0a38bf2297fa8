import base64
import binascii
import logging
import os
import posixpath
import re
import time
from typing import Optional, Tuple
from urllib.parse import unquote

import requests

from daas.models import SaveResult, UploadResult

logger = logging.getLogger(__name__)


def da_api_url() -> str:
    return os.getenv("DA_API_URL", "https://admin.da.live").rstrip("/")


def da_content_url() -> str:
    return os.getenv("DA_CONTENT_URL", "https://content.da.live").rstrip("/")


def aem_admin_url() -> str:
    return os.getenv("AEM_ADMIN_URL", "https://admin.hlx.page").rstrip("/")


def default_ref() -> str:
    return os.getenv("DAAS_DEFAULT_REF", "main")


def request_timeout() -> float:
    return float(os.getenv("DA_REQUEST_TIMEOUT", "30"))


_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^;,]*)*),(?P<data>.*)$", re.DOTALL)
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def split_da_path(path: str) -> Optional[Tuple[str, str, str]]:
    """``/owner/repo/rest/of/page`` -> ``(owner, repo, "rest/of/page")``."""
    parts = [part for part in (path or "").split("/") if part]
    if len(parts) < 3:
        return None
    owner, repo, *rest = parts
    return owner, repo, "/".join(rest)


def is_valid_destination(path: str) -> bool:
    return bool(path) and path.startswith("/") and split_da_path(path) is not None


def page_url(dest_path: str, ref: Optional[str] = None, domain: str = "page") -> Optional[str]:
    """Public URL of a DA page, ``https://{ref}--{repo}--{owner}.aem.{domain}/{path}``."""
    ref = ref or default_ref()
    parts = split_da_path(dest_path)
    if parts is None:
        return None
    owner, repo, page_path = parts
    return f"https://{ref}--{repo}--{owner}.aem.{domain}/{page_path}"


def _base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
        if not value:
            return "".join(reversed(digits))


def default_destination_path(source_path: Optional[str], now: Optional[float] = None) -> str:
    """Source path suffixed with a base-36 millisecond timestamp, or ``""`` without a source."""
    if not source_path:
        return ""
    millis = int((time.time() if now is None else now) * 1000)
    return f"{source_path}-{_base36(millis)}"


def decode_data_url(data_url: str) -> Optional[Tuple[str, bytes]]:
    match = _DATA_URL_RE.match(data_url or "")
    if not match:
        return None
    mime = match.group("mime") or "application/octet-stream"
    payload = match.group("data")
    try:
        if ";base64" in (match.group("params") or ""):
            return mime, base64.b64decode(payload, validate=False)
        return mime, unquote(payload).encode("utf-8")
    except (binascii.Error, ValueError):
        return None


class DAClient:
    """Thin ``requests`` wrapper around the DA source API and the AEM admin API.

    Every call is a single attempt; failures come back as ``None`` or as a
    result model with ``success=False`` so callers decide what to surface.
    """

    def __init__(self, token: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.token = token
        self.timeout = timeout if timeout is not None else request_timeout()

    def _headers(self) -> dict:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def fetch_source(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        url = f"{da_api_url()}/source{path}.html"
        try:
            response = requests.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("DA source fetch failed for %s: %s", path, exc)
            return None
        if response.status_code >= 400:
            logger.warning("DA source fetch for %s returned %d", path, response.status_code)
            return None
        return response.text

    def get_document(self, path: Optional[str]) -> Optional[str]:
        if not self.token:
            logger.warning("No auth token; cannot load %s for editing", path)
            return None
        return self.fetch_source(path)

    def upload_asset(self, dest_path: str, file_name: str, data_url: str) -> UploadResult:
        if not self.token:
            return UploadResult(success=False, error="No auth token")
        decoded = decode_data_url(data_url)
        if decoded is None:
            return UploadResult(success=False, error="Invalid data URL")
        mime, content = decoded

        folder = posixpath.dirname(dest_path.rstrip("/")) or "/"
        asset_path = posixpath.join(folder, "media", file_name)
        url = f"{da_api_url()}/source{asset_path}"
        try:
            response = requests.post(
                url,
                headers=self._headers(),
                files={"data": (file_name, content, mime)},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Asset upload failed for %s: %s", asset_path, exc)
            return UploadResult(success=False, error=str(exc))
        if response.status_code >= 400:
            logger.error("Asset upload for %s returned %d", asset_path, response.status_code)
            return UploadResult(success=False, error=f"HTTP {response.status_code}", status=response.status_code)
        logger.info("Uploaded asset %s", asset_path)
        return UploadResult(success=True, content_url=f"{da_content_url()}{asset_path}", status=response.status_code)

    def save_document(self, dest_path: str, html: str) -> SaveResult:
        if not self.token:
            return SaveResult(success=False, error="No auth token")
        url = f"{da_api_url()}/source{dest_path}.html"
        try:
            response = requests.post(
                url,
                headers=self._headers(),
                files={"data": ("index.html", html.encode("utf-8"), "text/html")},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("DA save failed for %s: %s", dest_path, exc)
            return SaveResult(success=False, error=str(exc))
        if response.status_code >= 400:
            logger.error("DA save for %s returned %d", dest_path, response.status_code)
            return SaveResult(success=False, error=f"HTTP {response.status_code}", status=response.status_code)
        logger.info("Saved document to %s", dest_path)
        return SaveResult(success=True, status=response.status_code)

    def preview_document(self, dest_path: str, ref: Optional[str] = None) -> SaveResult:
        if not self.token:
            return SaveResult(success=False, error="No auth token")
        parts = split_da_path(dest_path)
        if parts is None:
            return SaveResult(success=False, error="Invalid path format")
        ref = ref or default_ref()
        owner, repo, page_path = parts
        url = f"{aem_admin_url()}/preview/{owner}/{repo}/{ref}/{page_path}"
        headers = self._headers()
        headers["x-content-source-authorization"] = f"Bearer {self.token}"
        try:
            response = requests.post(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Preview failed for %s: %s", dest_path, exc)
            return SaveResult(success=False, error=str(exc))
        if response.status_code >= 400:
            logger.error("Preview for %s returned %d", dest_path, response.status_code)
            return SaveResult(success=False, error=f"HTTP {response.status_code}", status=response.status_code)
        logger.info("Previewed %s", dest_path)
        return SaveResult(success=True, status=response.status_code)
