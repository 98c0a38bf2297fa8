import asyncio
import logging
from typing import Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException

from daas.compose import compose_final_html
from daas.da_client import DAClient, default_destination_path
from daas.extract import extract_form_data
from daas.models import (
    ComposeRequest,
    ExpandRequest,
    ExtractRequest,
    ExtractResult,
    FieldUpdateRequest,
    HtmlResponse,
    MoveItemRequest,
    PublishRequest,
    PublishResult,
    RestoreRequest,
    SchemaParseRequest,
    SchemaParseResponse,
    SessionCreateRequest,
    SessionSnapshot,
    ValidateRequest,
    ValidationResult,
)
from daas.repeaters import expand_repeaters
from daas.schema import parse_schema_hierarchy, parse_template_schema, validate_required_fields
from daas.session import AuthoringSession

load_dotenv()

app = FastAPI(title="DaaS Page Service")
logger = logging.getLogger(__name__)

_sessions: Dict[str, AuthoringSession] = {}


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return authorization.strip() or None


def _get_session(session_id: str) -> AuthoringSession:
    session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session_not_found")
    return session


@app.get("/health")
async def health():
    return {"ok": True, "service": "page-service"}


@app.post("/schema/parse", response_model=SchemaParseResponse)
async def schema_parse(req: SchemaParseRequest):
    fields = parse_template_schema(req.html)
    return SchemaParseResponse(fields=fields, hierarchy=parse_schema_hierarchy(fields))


@app.post("/schema/validate", response_model=ValidationResult)
async def schema_validate(req: ValidateRequest):
    return validate_required_fields(req.fields, req.form_data)


@app.post("/expand", response_model=HtmlResponse)
async def expand(req: ExpandRequest):
    return HtmlResponse(html=expand_repeaters(req.html, req.counts))


@app.post("/extract", response_model=ExtractResult)
async def extract(req: ExtractRequest):
    return extract_form_data(req.html)


@app.post("/compose", response_model=HtmlResponse)
async def compose(req: ComposeRequest, authorization: Optional[str] = Header(default=None)):
    if req.source_html is None and not req.source_path:
        raise HTTPException(status_code=422, detail="source_required")

    source = req.source_html
    if source is None:
        source = await asyncio.to_thread(DAClient(_bearer(authorization)).fetch_source, req.source_path)
        if source is None:
            raise HTTPException(status_code=502, detail="source_unavailable")

    def fetch_source(_path):
        return source

    fields = req.fields or parse_template_schema(source)
    try:
        html = await asyncio.to_thread(
            compose_final_html,
            req.form_data,
            fields,
            req.image_urls,
            fetch_source=fetch_source,
            source_path=req.source_path,
            repeater_counts=req.repeater_counts,
        )
    except Exception as exc:  # pragma: no cover - unexpected errors
        logger.exception("Unexpected error composing %s", req.source_path or "inline source")
        raise HTTPException(status_code=500, detail="compose_failed") from exc

    if html is None:
        raise HTTPException(status_code=502, detail="source_unavailable")
    return HtmlResponse(html=html)


@app.post("/sessions", response_model=SessionSnapshot)
async def create_session(req: SessionCreateRequest, authorization: Optional[str] = Header(default=None)):
    client = DAClient(req.token or _bearer(authorization))
    session = AuthoringSession(req.source_path, client, fields=req.fields)
    loaded = await asyncio.to_thread(session.load, req.edit_path)
    if not loaded:
        raise HTTPException(status_code=502, detail="source_unavailable")
    _sessions[session.session_id] = session
    logger.info("Created session %s for %s", session.session_id, req.source_path)
    return session.snapshot()


@app.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str, preview: bool = True):
    return _get_session(session_id).snapshot(include_preview=preview)


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    _get_session(session_id)
    _sessions.pop(session_id, None)
    return {"ok": True}


@app.get("/sessions/{session_id}/validate", response_model=ValidationResult)
async def validate_session(session_id: str):
    return _get_session(session_id).validate()


@app.post("/sessions/{session_id}/fields")
async def update_field(session_id: str, req: FieldUpdateRequest):
    session = _get_session(session_id)
    updated = session.update_field(req.key, req.value)
    return {"key": req.key, "updated": updated, "state": session.state.value}


@app.post("/sessions/{session_id}/repeaters/{name}/items", response_model=SessionSnapshot)
async def add_item(session_id: str, name: str):
    session = _get_session(session_id)
    session.add_item(name)
    return session.snapshot()


@app.delete("/sessions/{session_id}/repeaters/{name}/items/{index}", response_model=SessionSnapshot)
async def remove_item(session_id: str, name: str, index: int):
    session = _get_session(session_id)
    if not session.remove_item(name, index):
        raise HTTPException(status_code=409, detail="cannot_remove_item")
    return session.snapshot()


@app.post("/sessions/{session_id}/repeaters/{name}/move", response_model=SessionSnapshot)
async def move_item(session_id: str, name: str, req: MoveItemRequest):
    session = _get_session(session_id)
    if not session.move_item(name, req.from_index, req.to_index):
        raise HTTPException(status_code=422, detail="invalid_item_index")
    return session.snapshot()


@app.post("/sessions/{session_id}/draft")
async def save_draft(session_id: str):
    draft = _get_session(session_id).save_draft()
    return {"ok": True, "saved": len(draft)}


@app.get("/sessions/{session_id}/draft")
async def get_draft(session_id: str):
    draft = _get_session(session_id).saved_draft()
    if draft is None:
        raise HTTPException(status_code=404, detail="no_draft")
    return {"form_data": draft}


@app.delete("/sessions/{session_id}/draft")
async def clear_draft(session_id: str):
    _get_session(session_id).clear_draft()
    return {"ok": True}


@app.post("/sessions/{session_id}/restore", response_model=SessionSnapshot)
async def restore(session_id: str, req: RestoreRequest):
    session = _get_session(session_id)
    if not session.restore(req.form_data):
        raise HTTPException(status_code=404, detail="no_draft")
    return session.snapshot()


@app.get("/sessions/{session_id}/destination")
async def suggest_destination(session_id: str):
    session = _get_session(session_id)
    return {"dest_path": default_destination_path(session.source_path)}


@app.post("/sessions/{session_id}/publish", response_model=PublishResult)
async def publish(session_id: str, req: PublishRequest):
    session = _get_session(session_id)
    try:
        result = await session.publish(req.dest_path, req.open_after)
    except Exception as exc:  # pragma: no cover - unexpected errors
        logger.exception("Unexpected error publishing %s", req.dest_path)
        raise HTTPException(status_code=500, detail="publish_failed") from exc

    if not result.success and result.status in (401, 403):
        raise HTTPException(status_code=result.status, detail=result.message)
    return result
