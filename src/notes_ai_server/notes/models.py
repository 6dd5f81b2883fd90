from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Records exchanged with the editor use camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PageSummary(CamelModel):
    id: UUID
    title: str = ""
    parent_id: UUID | None = None
    order: int = 0
    is_favorite: bool = False


class Page(PageSummary):
    content: str = "[]"
    tags: str = "[]"
    searchable_text: str | None = None
    created_at: datetime
    updated_at: datetime


class PageNode(PageSummary):
    """A page placed in the sidebar forest."""

    children: list["PageNode"] = Field(default_factory=list)


class Image(CamelModel):
    id: UUID
    filename: str
    original_name: str
    mime_type: str
    size: int
    page_id: UUID
    created_at: datetime
    updated_at: datetime


class AppSettings(CamelModel):
    id: str = "settings"
    ai_engine: str = "webllm"
    lm_studio_url: str = "http://localhost:1234/v1"
    lm_studio_model: str | None = None
    preferred_model: str | None = None
    fallback_enabled: bool = True
    updated_at: datetime | None = None
