"""Pydantic models for HTTP request payloads and query strings."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic.alias_generators import to_camel
import soupsieve

from kb_sync.domain.model import SourceType, UrlStatus


MIN_SYNC_INTERVAL_HOURS = 1
MAX_SYNC_INTERVAL_HOURS = 168


def _check_selectors(selectors: list[str]) -> list[str]:
    cleaned = [selector.strip() for selector in selectors if selector and selector.strip()]
    for selector in cleaned:
        try:
            soupsieve.compile(selector)
        except soupsieve.SelectorSyntaxError as exc:
            raise ValueError(f"Invalid CSS selector {selector!r}: {exc}") from exc
    return cleaned


class ApiModel(BaseModel):
    """Accept camelCase JSON while exposing snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class SourceCreate(ApiModel):
    client_id: str = Field(min_length=1, max_length=200)
    name: str = Field(min_length=1, max_length=200)
    source_type: SourceType = SourceType.CUSTOM_SITEMAP
    sitemap_url: HttpUrl
    base_url_filter: str | None = Field(default=None, max_length=2000)
    category: str = Field(default="general", min_length=1, max_length=100)
    sync_interval_hours: int | None = Field(default=None, ge=MIN_SYNC_INTERVAL_HOURS, le=MAX_SYNC_INTERVAL_HOURS)
    content_selectors: list[str] = Field(default_factory=list)
    exclude_selectors: list[str] = Field(default_factory=list)
    sync_enabled: bool = True
    start_sync: bool = True

    @field_validator("source_type")
    @classmethod
    def _supported_type(cls, value: SourceType) -> SourceType:
        if not value.is_supported:
            raise ValueError(f"Source type '{value.value}' is not supported yet")
        return value

    @field_validator("content_selectors", "exclude_selectors")
    @classmethod
    def _valid_selectors(cls, value: list[str]) -> list[str]:
        return _check_selectors(value)

    @field_validator("base_url_filter")
    @classmethod
    def _blank_filter_is_none(cls, value: str | None) -> str | None:
        return value.strip() or None if value is not None else None


class SourceUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    sitemap_url: HttpUrl | None = None
    base_url_filter: str | None = Field(default=None, max_length=2000)
    category: str | None = Field(default=None, min_length=1, max_length=100)
    sync_interval_hours: int | None = Field(default=None, ge=MIN_SYNC_INTERVAL_HOURS, le=MAX_SYNC_INTERVAL_HOURS)
    content_selectors: list[str] | None = None
    exclude_selectors: list[str] | None = None
    sync_enabled: bool | None = None
    is_active: bool | None = None

    @field_validator("content_selectors", "exclude_selectors")
    @classmethod
    def _valid_selectors(cls, value: list[str] | None) -> list[str] | None:
        return _check_selectors(value) if value is not None else None

    def changes(self) -> dict[str, object]:
        """Fields the caller actually sent, ready for the state store."""
        data = self.model_dump(exclude_unset=True)
        for key in ("name", "category", "sync_interval_hours", "sync_enabled", "is_active", "sitemap_url"):
            if key in data and data[key] is None:
                raise ValueError(f"{key} cannot be null")
        if "sitemap_url" in data:
            data["sitemap_url"] = str(data["sitemap_url"])
        if "base_url_filter" in data and data["base_url_filter"] is not None:
            data["base_url_filter"] = data["base_url_filter"].strip() or None
        for key in ("content_selectors", "exclude_selectors"):
            if key in data and data[key] is None:
                data[key] = []
        return data


class ToggleSyncRequest(ApiModel):
    enabled: bool


class ConnectionCheckRequest(ApiModel):
    sitemap_url: HttpUrl
    base_url_filter: str | None = None


class PageQuery(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class SourceListQuery(PageQuery):
    include_inactive: bool = False


class LedgerQuery(PageQuery):
    limit: int = Field(default=50, ge=1, le=200)
    status: UrlStatus | None = None
    search: str | None = Field(default=None, max_length=500)
