"""
Data Models for the Galarie media index

Tags parsed from filenames, media records produced by the walker, search
filters/results and rebuild status payloads.  Every model serialises with
camelCase aliases so the on-disk cache and the HTTP API share one wire shape.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    """Frozen model with camelCase aliases that still accepts field names."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

class TagKind(str, Enum):
    SIMPLE = "simple"
    KEY_VALUE = "keyvalue"


class Tag(_WireModel):
    """A single token parsed out of a filename."""

    raw_token: str = Field(..., description="Token exactly as it appeared in the filename")
    kind: TagKind = Field(..., alias="type", description="simple or keyvalue")
    name: str = Field(..., description="Lowercased tag name (the key for key/value tags)")
    value: Optional[str] = Field(None, description="Lowercased value for key/value tags")
    normalized: str = Field(..., description="name, or name=value for key/value tags")

    @classmethod
    def simple(cls, raw_token: str, name: str) -> "Tag":
        return cls(raw_token=raw_token, kind=TagKind.SIMPLE, name=name, value=None, normalized=name)

    @classmethod
    def key_value(cls, raw_token: str, name: str, value: str) -> "Tag":
        return cls(
            raw_token=raw_token,
            kind=TagKind.KEY_VALUE,
            name=name,
            value=value,
            normalized=f"{name}={value}",
        )

    @property
    def is_key_value(self) -> bool:
        return self.kind is TagKind.KEY_VALUE


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

class MediaType(str, Enum):
    IMAGE = "image"
    GIF = "gif"
    VIDEO = "video"
    AUDIO = "audio"
    PDF = "pdf"
    UNKNOWN = "unknown"

    @property
    def previewable(self) -> bool:
        return self in (MediaType.IMAGE, MediaType.GIF, MediaType.VIDEO)


class MediaFile(_WireModel):
    """A file discovered under the media root."""

    id: str = Field(..., description="SHA-1 of the relative path")
    relative_path: str = Field(..., description="'/'-separated path below the media root")
    media_type: MediaType = Field(MediaType.UNKNOWN, description="Classified from the extension")
    tags: Tuple[Tag, ...] = Field(default_factory=tuple, description="Tags in filename order")
    attributes: Dict[str, Tuple[str, ...]] = Field(
        default_factory=dict,
        description="Key/value tags flattened to key -> every value seen",
    )
    filesize: int = Field(0, ge=0, description="Size in bytes")
    thumbnail_path: Optional[str] = Field(None, description="Thumbnail URL hint for previewable media")
    indexed_at: datetime = Field(..., description="When the walker produced this record")

    @field_validator("relative_path")
    @classmethod
    def _no_traversal(cls, v: str) -> str:
        parts = v.split("/")
        if not v or v.startswith("/") or any(p in ("", ".", "..") for p in parts):
            raise ValueError(f"relative path escapes the media root: {v!r}")
        return v

    def tag_names(self) -> List[str]:
        return [t.normalized for t in self.tags]


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class TagFilter(_WireModel):
    """Normalized search input. Build with ``search.build_filter`` from raw params."""

    required_tags: List[str] = Field(default_factory=list)
    attribute_filters: Dict[str, List[str]] = Field(default_factory=dict)
    page: int = Field(1, ge=1)
    page_size: int = Field(60, ge=1)


class SearchResult(_WireModel):
    items: List[MediaFile] = Field(default_factory=list)
    total: int = Field(0, ge=0, description="Match count before pagination")
    page: int = 1
    page_size: int = 60


# ---------------------------------------------------------------------------
# Rebuild
# ---------------------------------------------------------------------------

class RebuildState(str, Enum):
    IDLE = "idle"
    REBUILDING = "rebuilding"


class RebuildStatus(_WireModel):
    """Outcome of a rebuild request."""

    status: str = Field(..., description="queued or complete")
    started_at: datetime
    completed_at: Optional[datetime] = None
    reused_cache: bool = Field(False, description="True when a fresh cache file was reused without walking")
    media_count: Optional[int] = None
    generation: Optional[int] = None
