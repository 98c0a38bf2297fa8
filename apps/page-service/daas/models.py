from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

FormValue = Union[str, List[str], Dict[str, Any]]
FormData = Dict[str, FormValue]


class FieldSchema(BaseModel):
    key: str
    label: Optional[str] = None
    type: str = "text"
    required: bool = False
    default: Optional[str] = None
    options: Optional[str] = None
    multiple: bool = False
    min: Optional[str] = None
    max: Optional[str] = None
    pattern: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _blank_type_is_text(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text or "text"

    @field_validator("required", "multiple", mode="before")
    @classmethod
    def _loose_bool(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"true", "yes", "1", "on", "x"}
        return bool(value)

    @field_validator("default", "options", "min", "max", "pattern", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, list):
            return ",".join(str(item) for item in value)
        text = str(value)
        return text if text != "" else None


class HierarchyField(FieldSchema):
    field_name: str
    original_key: str


class FieldGroup(BaseModel):
    name: str
    fields: List[HierarchyField] = Field(default_factory=list)


class SchemaHierarchy(BaseModel):
    groups: Dict[str, FieldGroup] = Field(default_factory=dict)
    repeaters: Dict[str, FieldGroup] = Field(default_factory=dict)
    standalone: List[FieldSchema] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_valid: bool
    missing_fields: List[str] = Field(default_factory=list)


class ExtractResult(BaseModel):
    form_data: FormData = Field(default_factory=dict)
    repeater_counts: Dict[str, int] = Field(default_factory=dict)


class UploadResult(BaseModel):
    success: bool
    content_url: Optional[str] = None
    error: Optional[str] = None
    status: Optional[int] = None


class SaveResult(BaseModel):
    success: bool
    status: Optional[int] = None
    error: Optional[str] = None


class PublishResult(BaseModel):
    success: bool
    dest_path: str
    status: Optional[int] = None
    message: str
    page_url: Optional[str] = None
    failed_uploads: List[str] = Field(default_factory=list)
    previewed: bool = False
    open_url: Optional[str] = None


class SchemaParseRequest(BaseModel):
    html: str


class SchemaParseResponse(BaseModel):
    fields: List[FieldSchema]
    hierarchy: SchemaHierarchy


class ValidateRequest(BaseModel):
    fields: List[FieldSchema]
    form_data: FormData = Field(default_factory=dict)


class ExpandRequest(BaseModel):
    html: str
    counts: Dict[str, int] = Field(default_factory=dict)


class ExtractRequest(BaseModel):
    html: str


class ComposeRequest(BaseModel):
    fields: List[FieldSchema] = Field(default_factory=list)
    form_data: FormData = Field(default_factory=dict)
    image_urls: Dict[str, str] = Field(default_factory=dict)
    repeater_counts: Dict[str, int] = Field(default_factory=dict)
    source_html: Optional[str] = None
    source_path: Optional[str] = None


class HtmlResponse(BaseModel):
    html: str


class SessionCreateRequest(BaseModel):
    source_path: str
    fields: Optional[List[FieldSchema]] = None
    edit_path: Optional[str] = None
    token: Optional[str] = None


class SessionSnapshot(BaseModel):
    session_id: str
    source_path: str
    state: str
    edit_path: Optional[str] = None
    repeater_counts: Dict[str, int] = Field(default_factory=dict)
    form_data: FormData = Field(default_factory=dict)
    preview_html: Optional[str] = None


class FieldUpdateRequest(BaseModel):
    key: str
    value: FormValue = ""


class MoveItemRequest(BaseModel):
    from_index: int
    to_index: int


class RestoreRequest(BaseModel):
    form_data: Optional[FormData] = None


class PublishRequest(BaseModel):
    dest_path: str
    open_after: bool = False
