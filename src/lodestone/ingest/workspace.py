"""Workspace page-collection extractor backed by the Notion REST API.

Each non-excluded ``source_items`` row names a Notion page (``kind="page"``)
or database (``kind="database"``) by ID. Pages are rendered from their block
tree to markdown; databases render one section per row.

The integration token is read from the environment variable named by the
source config's ``token_env`` (default ``NOTION_API_KEY``), never from disk.
"""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any

from lodestone.db.models import Source, SourceItem
from lodestone.errors import ExtractionError
from lodestone.ingest.base import ExtractedItem, Extractor, format_page

logger = logging.getLogger(__name__)

NOTION_API_URL = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
DEFAULT_TOKEN_ENV = "NOTION_API_KEY"
_PAGE_SIZE = 100


class NotionClient:
    """Minimal JSON client for the endpoints the extractor needs."""

    def __init__(self, token: str, timeout: float = 30.0, base_url: str = NOTION_API_URL) -> None:
        self._token = token
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")

    def request(self, method: str, path: str, body: dict | None = None) -> dict[str, Any]:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(
            f"{self._base_url}/{path.lstrip('/')}",
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Notion-Version": NOTION_VERSION,
                "Content-Type": "application/json",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as response:
                return json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise ExtractionError(f"Notion API error {exc.code} for {path}") from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise ExtractionError(f"Notion API request failed for {path}: {exc}") from exc

    def retrieve_page(self, page_id: str) -> dict[str, Any]:
        return self.request("GET", f"pages/{page_id}")

    def retrieve_database(self, database_id: str) -> dict[str, Any]:
        return self.request("GET", f"databases/{database_id}")

    def query_database(self, database_id: str) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            body: dict[str, Any] = {"page_size": _PAGE_SIZE}
            if cursor:
                body["start_cursor"] = cursor
            data = self.request("POST", f"databases/{database_id}/query", body)
            rows.extend(data.get("results", []))
            cursor = data.get("next_cursor")
            if not data.get("has_more") or not cursor:
                return rows

    def list_blocks(self, block_id: str) -> list[dict[str, Any]]:
        """Return all blocks under *block_id*, children inlined after their parent."""
        blocks: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            path = f"blocks/{block_id}/children?page_size={_PAGE_SIZE}"
            if cursor:
                path += f"&start_cursor={cursor}"
            data = self.request("GET", path)
            for block in data.get("results", []):
                if "type" not in block:
                    continue
                blocks.append(block)
                if block.get("has_children"):
                    blocks.extend(self.list_blocks(block["id"]))
            cursor = data.get("next_cursor")
            if not data.get("has_more") or not cursor:
                return blocks


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------


def rich_text_to_markdown(rich_text: list[dict[str, Any]]) -> str:
    parts: list[str] = []
    for item in rich_text:
        content = item.get("plain_text", "")
        ann = item.get("annotations", {})
        if ann.get("bold"):
            content = f"**{content}**"
        if ann.get("italic"):
            content = f"*{content}*"
        if ann.get("strikethrough"):
            content = f"~~{content}~~"
        if ann.get("code"):
            content = f"`{content}`"
        link = (item.get("text") or {}).get("link")
        if item.get("type") == "text" and link:
            content = f"[{content}]({link['url']})"
        parts.append(content)
    return "".join(parts)


def block_to_markdown(block: dict[str, Any]) -> str:
    """Render one block; unsupported block types render as an empty string."""
    kind = block.get("type", "")
    data = block.get(kind) or {}
    text = rich_text_to_markdown(data.get("rich_text", []))

    if kind == "paragraph":
        return text + "\n"
    if kind in ("heading_1", "heading_2", "heading_3"):
        return f"{'#' * int(kind[-1])} {text}\n"
    if kind == "bulleted_list_item":
        return f"- {text}"
    if kind == "numbered_list_item":
        return f"1. {text}"
    if kind == "to_do":
        return f"- {'[x]' if data.get('checked') else '[ ]'} {text}"
    if kind == "toggle":
        return f"> {text}"
    if kind == "quote":
        return f"> {text}\n"
    if kind == "callout":
        icon = data.get("icon") or {}
        emoji = f"{icon['emoji']} " if icon.get("type") == "emoji" else ""
        return f"> {emoji}{text}\n"
    if kind == "code":
        return f"```{data.get('language', '')}\n{text}\n```\n"
    if kind == "divider":
        return "---\n"
    if kind in ("bookmark", "link_preview"):
        label = "Bookmark" if kind == "bookmark" else "Link"
        return f"[{label}]({data['url']})\n" if data.get("url") else ""
    if kind == "image":
        url = (data.get(data.get("type", "")) or {}).get("url")
        return f"![Image]({url})\n" if url else ""
    return ""


def blocks_to_markdown(blocks: list[dict[str, Any]]) -> str:
    return "\n".join(md for md in (block_to_markdown(b) for b in blocks) if md)


def page_title(page: dict[str, Any]) -> str:
    for prop in (page.get("properties") or {}).values():
        if prop.get("type") == "title" and prop.get("title"):
            return "".join(t.get("plain_text", "") for t in prop["title"])
    return "Untitled"


def database_title(database: dict[str, Any]) -> str:
    title = database.get("title") or []
    return "".join(t.get("plain_text", "") for t in title) or "Untitled Database"


# ------------------------------------------------------------------
# Extractor
# ------------------------------------------------------------------


class WorkspaceExtractor(Extractor):
    """Extract the selected pages and databases of a Notion workspace."""

    def __init__(self, timeout: float = 30.0, client: NotionClient | None = None) -> None:
        self._timeout = timeout
        self._client = client

    def extract(self, source: Source, items: list[SourceItem]) -> list[ExtractedItem]:
        pages = [i for i in items if not i.is_excluded]
        if not pages:
            raise ExtractionError("No pages to process")
        client = self._client or self._client_for(source)

        extracted: list[ExtractedItem] = []
        for item in pages:
            try:
                title, body = self._fetch(client, item)
            except ExtractionError as exc:
                logger.warning(
                    "Workspace page failed",
                    extra={"source_id": source.id, "item_id": item.id, "error": str(exc)},
                )
                extracted.append(ExtractedItem(text="", item_id=item.id, error=str(exc)))
                continue
            if not body.strip():
                extracted.append(
                    ExtractedItem(text="", item_id=item.id, error="No content extracted")
                )
                continue
            extracted.append(
                ExtractedItem(
                    text=format_page(title, f"Notion ({item.kind})", body),
                    metadata={
                        "notion_page_id": item.address,
                        "notion_page_title": title,
                        "page_type": item.kind,
                    },
                    item_id=item.id,
                    title=title,
                )
            )
        return extracted

    def _client_for(self, source: Source) -> NotionClient:
        env_name = source.config_dict.get("token_env") or DEFAULT_TOKEN_ENV
        token = os.environ.get(env_name)
        if not token:
            raise ExtractionError(
                f"No workspace access token found. Set the {env_name} environment variable."
            )
        return NotionClient(token, timeout=self._timeout)

    @staticmethod
    def _fetch(client: NotionClient, item: SourceItem) -> tuple[str, str]:
        if item.kind == "database":
            database = client.retrieve_database(item.address)
            title = database_title(database)
            sections = [f"# {title}\n"]
            for row in client.query_database(item.address):
                if row.get("object") != "page":
                    continue
                sections.append(f"## {page_title(row)}\n")
                sections.append(blocks_to_markdown(client.list_blocks(row["id"])))
                sections.append("---\n")
            return title, "\n".join(sections)

        page = client.retrieve_page(item.address)
        return page_title(page), blocks_to_markdown(client.list_blocks(item.address))
