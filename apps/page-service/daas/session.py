import asyncio
import copy
import logging
import mimetypes
import os
import re
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from daas import dom
from daas.compose import compose_final_html
from daas.da_client import DAClient, is_valid_destination, page_url
from daas.extract import extract_form_data
from daas.field_types import FieldKind
from daas.live_binder import LiveBinder
from daas.models import FieldSchema, PublishResult, SessionSnapshot, ValidationResult
from daas.repeaters import expand_repeaters, normalize_counts, reindex_after_remove, repeat_count, swap_items
from daas.schema import field_for_key, field_map, parse_schema_hierarchy, parse_template_schema, validate_required_fields
from daas.tokens import split_indexed_key

logger = logging.getLogger(__name__)


def restore_settle_seconds() -> float:
    return float(os.getenv("DAAS_RESTORE_SETTLE_SECONDS", "0.5"))


class RenderState(str, Enum):
    IDLE = "idle"
    RENDERING = "rendering"
    RESTORING_DATA = "restoring_data"


def publish_message(status: Optional[int], error: Optional[str]) -> str:
    if error == "No auth token":
        return "Authentication required. Please sign in again."
    if status == 401:
        return "Session expired. Please sign in again."
    if status == 403:
        return "Permission denied. Check your access rights."
    return f"Failed to create page: {error}"


def _asset_name(key: str, data_url: str) -> str:
    mime = data_url[5:].split(";", 1)[0].split(",", 1)[0] if data_url.startswith("data:") else ""
    extension = mimetypes.guess_extension(mime) or ".bin"
    stem = re.sub(r"[^a-zA-Z0-9_-]+", "-", key).strip("-") or "image"
    return f"{stem}{extension}"


class AuthoringSession:
    """One author's working state for a single template.

    Holds the pristine source, the repeater counts, the form values and the live
    preview document. Every mutation that changes structure re-renders from the
    cached source; value edits only go through the live binder.
    """

    def __init__(
        self,
        source_path: str,
        client: DAClient,
        fields: Optional[List[FieldSchema]] = None,
        session_id: Optional[str] = None,
        settle_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.source_path = source_path
        self.client = client
        self.fields: List[FieldSchema] = list(fields or [])
        self._fields_given = fields is not None
        self.edit_path: Optional[str] = None
        self.source_html: Optional[str] = None
        self.repeater_counts: Dict[str, int] = {}
        self.form_data: Dict[str, Any] = {}
        self.state = RenderState.IDLE
        self.binder: Optional[LiveBinder] = None
        self._draft: Optional[Dict[str, Any]] = None
        self._settle_seconds = settle_seconds if settle_seconds is not None else restore_settle_seconds()
        self._settle_until = 0.0
        self._clock = clock

    # -- loading and rendering --------------------------------------------------

    def load(self, edit_path: Optional[str] = None) -> bool:
        source = self.client.fetch_source(self.source_path)
        if source is None:
            logger.error("Source template %s is unavailable", self.source_path)
            return False
        self.source_html = source
        if not self._fields_given:
            self.fields = parse_template_schema(source)

        hierarchy = parse_schema_hierarchy(self.fields)
        self.repeater_counts = {name: 1 for name in hierarchy.repeaters}
        self.form_data = {
            field.key: field.default
            for field in hierarchy.standalone
            if field.default
        }
        for group in hierarchy.groups.values():
            for member in group.fields:
                if member.default:
                    self.form_data[member.original_key] = member.default

        if edit_path:
            self.edit_path = edit_path
            existing = self.client.get_document(edit_path)
            if existing is None:
                logger.warning("Could not load %s for editing; starting from the template", edit_path)
            else:
                extracted = extract_form_data(existing)
                self.repeater_counts.update(normalize_counts(extracted.repeater_counts))
                self.form_data.update(extracted.form_data)

        logger.info(
            "Session %s loaded %s with %d fields and %d repeaters",
            self.session_id,
            self.source_path,
            len(self.fields),
            len(self.repeater_counts),
        )
        self.render()
        return True

    def _refresh_state(self) -> None:
        if self.state is RenderState.RESTORING_DATA and self._clock() >= self._settle_until:
            self.state = RenderState.IDLE

    def render(self) -> Optional[str]:
        """Re-render the preview; dropped while another render or a restore is in progress."""
        self._refresh_state()
        if self.state is not RenderState.IDLE:
            logger.info("Render requested while %s; dropped", self.state.value)
            return None
        self.state = RenderState.RENDERING
        try:
            return self._rebuild()
        finally:
            self.state = RenderState.IDLE

    def _rebuild(self) -> Optional[str]:
        if self.source_html is None:
            return None
        document = dom.parse(expand_repeaters(self.source_html, self.repeater_counts))
        if self.binder is None:
            self.binder = LiveBinder(document)
        else:
            self.binder.reindex(document)
        for key, value in self.form_data.items():
            self._bind(key, value)
        return self.preview_html

    def _bind(self, key: str, value: Any) -> int:
        field = field_for_key(field_map(self.fields), key)
        return self.binder.bind(key, value, field.type if field else None)

    @property
    def preview_html(self) -> Optional[str]:
        if self.binder is None:
            return None
        return dom.render(self.binder.document)

    # -- field values -------------------------------------------------------------

    def update_field(self, key: str, value: Any) -> int:
        self.form_data[key] = value
        self._refresh_state()
        if self.state is RenderState.RESTORING_DATA or self.binder is None:
            return 0
        return self._bind(key, value)

    def validate(self) -> ValidationResult:
        return validate_required_fields(self.fields, self.form_data)

    # -- repeater items -------------------------------------------------------------

    def add_item(self, name: str) -> int:
        self.repeater_counts[name] = repeat_count(self.repeater_counts, name) + 1
        self.render()
        return self.repeater_counts[name]

    def remove_item(self, name: str, index: int) -> bool:
        count = repeat_count(self.repeater_counts, name)
        if count <= 1:
            logger.info("Repeater %s already has a single item; not removing", name)
            return False
        if index < 0 or index >= count:
            return False
        self.form_data = reindex_after_remove(self.form_data, name, index)
        self.repeater_counts[name] = count - 1
        self.render()
        return True

    def move_item(self, name: str, from_index: int, to_index: int) -> bool:
        count = repeat_count(self.repeater_counts, name)
        if not (0 <= from_index < count and 0 <= to_index < count):
            return False
        if from_index == to_index:
            return True
        step = 1 if to_index > from_index else -1
        data = self.form_data
        for index in range(from_index, to_index, step):
            data = swap_items(data, name, index, index + step)
        self.form_data = data
        self.render()
        return True

    # -- drafts -----------------------------------------------------------------------

    def save_draft(self) -> Dict[str, Any]:
        self._draft = copy.deepcopy(self.form_data)
        logger.info("Session %s saved a draft with %d values", self.session_id, len(self._draft))
        return self._draft

    def saved_draft(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._draft) if self._draft is not None else None

    def clear_draft(self) -> None:
        self._draft = None

    def restore(self, form_data: Optional[Mapping[str, Any]] = None) -> bool:
        data = form_data if form_data is not None else self._draft
        if data is None:
            return False

        self.state = RenderState.RESTORING_DATA
        self._settle_until = self._clock() + self._settle_seconds
        self.form_data = dict(data)
        counts: Dict[str, int] = {}
        for key in self.form_data:
            indexed = split_indexed_key(key)
            if indexed:
                name, index, _ = indexed
                counts[name] = max(counts.get(name, 1), index + 1)
        self.repeater_counts.update(counts)
        self._rebuild()
        logger.info("Session %s restored %d values", self.session_id, len(self.form_data))
        return True

    # -- output -------------------------------------------------------------------------

    def compose(self, image_urls: Optional[Mapping[str, str]] = None) -> Optional[str]:
        return compose_final_html(
            self.form_data,
            self.fields,
            image_urls,
            fetch_source=self._pristine_source,
            source_path=self.source_path,
            repeater_counts=self.repeater_counts,
        )

    def _pristine_source(self, path: Optional[str]) -> Optional[str]:
        if self.source_html is not None:
            return self.source_html
        return self.client.fetch_source(path)

    def _pending_images(self) -> Dict[str, str]:
        pending: Dict[str, str] = {}
        fields = field_map(self.fields)
        for key, value in self.form_data.items():
            if isinstance(value, dict) and value.get("dataUrl") and not value.get("existingUrl"):
                pending[key] = value["dataUrl"]
            elif isinstance(value, str) and value.startswith("data:"):
                field = field_for_key(fields, key)
                if field is not None and FieldKind.parse(field.type) is FieldKind.IMAGE:
                    pending[key] = value
        return pending

    async def publish(self, dest_path: str, open_after: bool = False, ref: Optional[str] = None) -> PublishResult:
        """Upload pending images, compose, save and preview, strictly in that order."""
        if not is_valid_destination(dest_path):
            return PublishResult(success=False, dest_path=dest_path, message="Path must be in format: /owner/repo/path")

        image_urls: Dict[str, str] = {}
        failed: List[str] = []
        for key, data_url in self._pending_images().items():
            upload = await asyncio.to_thread(self.client.upload_asset, dest_path, _asset_name(key, data_url), data_url)
            if upload.success and upload.content_url:
                image_urls[key] = upload.content_url
                current = self.form_data.get(key)
                alt = current.get("alt", "") if isinstance(current, dict) else ""
                self.form_data[key] = {"existingUrl": upload.content_url, "alt": alt}
            else:
                logger.warning("Image upload for %s failed: %s", key, upload.error)
                failed.append(key)

        html = self.compose(image_urls)
        if html is None:
            return PublishResult(
                success=False,
                dest_path=dest_path,
                message="Failed to create page: Failed to compose final HTML",
                failed_uploads=failed,
            )

        saved = await asyncio.to_thread(self.client.save_document, dest_path, html)
        if not saved.success:
            logger.error("Saving %s failed with status %s", dest_path, saved.status)
            return PublishResult(
                success=False,
                dest_path=dest_path,
                status=saved.status,
                message=publish_message(saved.status, saved.error),
                failed_uploads=failed,
            )

        preview = await asyncio.to_thread(self.client.preview_document, dest_path, ref)
        if not preview.success:
            logger.warning("Preview of %s failed: %s", dest_path, preview.error)

        url = page_url(dest_path, ref)
        self.clear_draft()
        logger.info("Session %s published %s", self.session_id, dest_path)
        return PublishResult(
            success=True,
            dest_path=dest_path,
            status=saved.status,
            message="Page created",
            page_url=url,
            failed_uploads=failed,
            previewed=preview.success,
            open_url=url if open_after else None,
        )

    def snapshot(self, include_preview: bool = True) -> SessionSnapshot:
        self._refresh_state()
        return SessionSnapshot(
            session_id=self.session_id,
            source_path=self.source_path,
            state=self.state.value,
            edit_path=self.edit_path,
            repeater_counts=dict(self.repeater_counts),
            form_data=dict(self.form_data),
            preview_html=self.preview_html if include_preview else None,
        )
