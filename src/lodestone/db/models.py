"""Domain models for the lodestone database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class SourceType(str, Enum):
    TEXT = "text"
    QA = "qa"
    WEBSITE = "website"
    DOCUMENT = "document"
    WORKSPACE = "workspace"


class SourceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Source types whose content lives elsewhere and can be fetched again.
RECRAWLABLE_TYPES: frozenset[SourceType] = frozenset(
    {SourceType.WEBSITE, SourceType.WORKSPACE}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(moment: datetime) -> str:
    """Serialise *moment* as a sortable UTC ISO-8601 string (second precision)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def from_timestamp(value: str | None) -> datetime | None:
    """Parse a timestamp written by ``to_timestamp()``; None passes through."""
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


@dataclass
class Organization:
    id: str
    name: str
    plan: str = "free"
    subscription_status: str = "active"
    created_at: str | None = None


@dataclass
class Project:
    id: str
    organization_id: str
    name: str
    is_active: bool = True
    created_at: str | None = None


@dataclass
class Source:
    """One ingested content unit owned by a project.

    ``config`` holds the type-specific payload as a JSON string (text body,
    question/answer, website URL and crawl type, document path, ...).
    """

    id: str
    project_id: str
    type: SourceType
    name: str
    status: SourceStatus = SourceStatus.PENDING
    error_message: str | None = None
    config: str = field(default_factory=lambda: "{}")
    chunks_count: int = 0
    tokens_count: int = 0
    auto_retrain: bool = False
    last_retrained_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def config_dict(self) -> dict:
        return json.loads(self.config)

    @property
    def recrawlable(self) -> bool:
        return self.type in RECRAWLABLE_TYPES


@dataclass
class SourceItem:
    """A sub-resource of a source: a sitemap link or a workspace page/database."""

    id: str
    source_id: str
    kind: str
    address: str
    title: str | None = None
    status: str = "pending"
    error_message: str | None = None
    is_excluded: bool = False
    content_size: int | None = None
    last_synced_at: str | None = None


@dataclass
class Chunk:
    id: str
    source_id: str
    project_id: str
    chunk_index: int
    content: str
    metadata: str = field(default_factory=lambda: "{}")
    tokens_count: int = 0
    embedding_model: str = ""
    created_at: str | None = None

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)


@dataclass
class ApiKey:
    id: str
    project_id: str
    name: str
    key_hash: str
    key_prefix: str
    is_active: bool = True
    expires_at: str | None = None
    last_used_at: str | None = None
    created_at: str | None = None
