"""Notion static site generator core.

Turns Notion pages into normalized documents:
- render_blocks: block sequence -> lightweight markdown body
- extract_title / extract_metadata: property bag -> title and template context
- build_document: page + blocks -> PageDocument

The conversion functions are pure. Fetching (NotionSource), configuration
(SiteConfig) and the CLI (main) are thin collaborators around them.

Token: read from the file named by `token_file` in ssg_config.json, or
passed via --token-file <path> on the command line.
"""

import argparse
import dataclasses
import json
import logging
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

import httpx

logger = logging.getLogger("notion-ssg")


class PageStructureError(ValueError):
    """A required input to the document builder is missing entirely."""


class ConfigError(Exception):
    """Site configuration could not be loaded."""


# =============================================================================
# Data Model
# =============================================================================

class BlockType(Enum):
    """Block kinds the body renderer understands.

    Every other Notion block type maps to UNSUPPORTED and is skipped.
    """
    PARAGRAPH = "paragraph"
    HEADING_1 = "heading_1"
    HEADING_2 = "heading_2"
    HEADING_3 = "heading_3"
    BULLETED_LIST_ITEM = "bulleted_list_item"
    NUMBERED_LIST_ITEM = "numbered_list_item"
    TO_DO = "to_do"
    CODE = "code"
    IMAGE = "image"
    QUOTE = "quote"
    DIVIDER = "divider"
    CALLOUT = "callout"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_tag(cls, tag: Optional[str]) -> "BlockType":
        try:
            return cls(tag)
        except ValueError:
            return cls.UNSUPPORTED


@dataclass(frozen=True)
class TextSpan:
    """A span of rich text with formatting."""
    text: str
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    underline: bool = False
    code: bool = False
    # Accepted but not rendered
    color: str = "default"


@dataclass(frozen=True)
class TextPayload:
    rich_text: tuple[TextSpan, ...] = ()


@dataclass(frozen=True)
class TodoPayload:
    rich_text: tuple[TextSpan, ...] = ()
    checked: bool = False


@dataclass(frozen=True)
class CodePayload:
    rich_text: tuple[TextSpan, ...] = ()
    language: str = ""


@dataclass(frozen=True)
class ImagePayload:
    file_url: str = ""
    external_url: str = ""
    caption: tuple[TextSpan, ...] = ()

    @property
    def url(self) -> str:
        """Uploaded file URL if present, else the external URL."""
        return self.file_url or self.external_url


@dataclass(frozen=True)
class CalloutPayload:
    rich_text: tuple[TextSpan, ...] = ()
    emoji: str = ""


BlockPayload = Union[TextPayload, TodoPayload, CodePayload, ImagePayload, CalloutPayload, None]


@dataclass(frozen=True)
class ContentBlock:
    """One Notion block, reduced to the payload its type needs.

    `tag` keeps the raw Notion type so unsupported blocks can be reported.
    """
    id: str
    type: BlockType
    payload: BlockPayload = None
    tag: str = ""


# Property bag variants

@dataclass(frozen=True)
class TitleValue:
    spans: tuple[TextSpan, ...] = ()


@dataclass(frozen=True)
class SelectValue:
    name: str = ""


@dataclass(frozen=True)
class MultiSelectValue:
    names: tuple[str, ...] = ()


@dataclass(frozen=True)
class DateValue:
    start: str = ""


@dataclass(frozen=True)
class UnknownValue:
    type: str = ""


PropertyValue = Union[TitleValue, SelectValue, MultiSelectValue, DateValue, UnknownValue]


@dataclass(frozen=True)
class PageMetadata:
    """Fixed page fields plus select/multi_select/date properties.

    `fields` is keyed by lower-cased property name and is read-only.
    """
    created_time: str = ""
    last_edited_time: str = ""
    url: str = ""
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def to_context(self) -> dict[str, Any]:
        """Flatten into a template context.

        Dynamic fields are written after the fixed ones, so a property whose
        lower-cased name is "url" replaces the page URL.
        """
        context: dict[str, Any] = {
            "createdTime": self.created_time,
            "lastEditedTime": self.last_edited_time,
            "url": self.url,
        }
        for key, value in self.fields.items():
            context[key] = list(value) if isinstance(value, tuple) else value
        return context


@dataclass(frozen=True)
class PageDocument:
    """Normalized output for one Notion page."""
    id: str
    title: str
    body: str
    metadata: PageMetadata

    @property
    def slug(self) -> str:
        return slugify(self.title)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "title": self.title,
            "body": self.body,
            "metadata": self.metadata.to_context(),
        }


# =============================================================================
# Notion JSON -> Data Model
# =============================================================================

def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def parse_rich_text(rich_text: Optional[list[dict]]) -> tuple[TextSpan, ...]:
    """Convert a Notion rich_text array into TextSpans.

    Args:
        rich_text: Notion API rich_text array (None is treated as empty).

    Returns:
        Spans in source order. Non-dict items are dropped.
    """
    spans = []
    for item in _as_list(rich_text):
        if not isinstance(item, dict):
            continue
        text = item.get("plain_text")
        if text is None:
            text = _as_dict(item.get("text")).get("content", "")
        annotations = _as_dict(item.get("annotations"))
        spans.append(TextSpan(
            text=text if isinstance(text, str) else "",
            bold=bool(annotations.get("bold")),
            italic=bool(annotations.get("italic")),
            strikethrough=bool(annotations.get("strikethrough")),
            underline=bool(annotations.get("underline")),
            code=bool(annotations.get("code")),
            color=annotations.get("color") or "default",
        ))
    return tuple(spans)


# Block types whose payload is just a rich_text array
TEXT_BLOCK_TYPES = {
    BlockType.PARAGRAPH,
    BlockType.HEADING_1,
    BlockType.HEADING_2,
    BlockType.HEADING_3,
    BlockType.BULLETED_LIST_ITEM,
    BlockType.NUMBERED_LIST_ITEM,
    BlockType.QUOTE,
}


def parse_block(block: dict) -> ContentBlock:
    """Convert a Notion block object into a ContentBlock.

    Never raises on data-shape problems: a missing payload object yields an
    empty payload of the right kind, an unknown type yields UNSUPPORTED.
    """
    block = _as_dict(block)
    tag = block.get("type")
    if not isinstance(tag, str):
        tag = ""
    block_type = BlockType.from_tag(tag)
    data = _as_dict(block.get(tag)) if tag else {}
    rich_text = parse_rich_text(data.get("rich_text"))

    if block_type in TEXT_BLOCK_TYPES:
        payload: BlockPayload = TextPayload(rich_text=rich_text)
    elif block_type == BlockType.TO_DO:
        payload = TodoPayload(rich_text=rich_text, checked=bool(data.get("checked")))
    elif block_type == BlockType.CODE:
        payload = CodePayload(rich_text=rich_text, language=data.get("language") or "")
    elif block_type == BlockType.IMAGE:
        payload = ImagePayload(
            file_url=_as_dict(data.get("file")).get("url") or "",
            external_url=_as_dict(data.get("external")).get("url") or "",
            caption=parse_rich_text(data.get("caption")),
        )
    elif block_type == BlockType.CALLOUT:
        icon = _as_dict(data.get("icon"))
        payload = CalloutPayload(rich_text=rich_text, emoji=icon.get("emoji") or "")
    else:
        # divider and unsupported carry nothing
        payload = None

    return ContentBlock(id=block.get("id") or "", type=block_type, payload=payload, tag=tag)


def parse_property(prop: dict) -> PropertyValue:
    """Convert a Notion property object into a PropertyValue variant."""
    prop = _as_dict(prop)
    prop_type = prop.get("type") or ""

    if prop_type == "title":
        return TitleValue(spans=parse_rich_text(prop.get("title")))

    elif prop_type == "select":
        select = _as_dict(prop.get("select"))
        return SelectValue(name=select.get("name") or "")

    elif prop_type == "multi_select":
        options = _as_list(prop.get("multi_select"))
        return MultiSelectValue(names=tuple(
            opt.get("name") or "" for opt in options if isinstance(opt, dict)
        ))

    elif prop_type == "date":
        date_obj = _as_dict(prop.get("date"))
        return DateValue(start=date_obj.get("start") or "")

    return UnknownValue(type=prop_type)


# =============================================================================
# Rich Text Rendering
# =============================================================================

def render_span(span: TextSpan) -> str:
    """Render one span. Nesting is always bold > italic > strikethrough > code."""
    result = span.text
    if span.code:
        result = f"`{result}`"
    if span.strikethrough:
        result = f"~~{result}~~"
    if span.italic:
        result = f"*{result}*"
    if span.bold:
        result = f"**{result}**"
    # underline and color have no markup
    return result


def render_rich_text(spans: Sequence[TextSpan]) -> str:
    """Render spans to inline markup, concatenated in order."""
    return "".join(render_span(span) for span in spans)


# =============================================================================
# Slugs
# =============================================================================

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9_\s-]")
_SLUG_SEPARATOR_RE = re.compile(r"[\s_-]+")


def slugify(text: str) -> str:
    """Derive a URL-safe slug from a title.

    "My Page!" -> "my-page". May return "" (e.g. for "!!!"). Idempotent.
    """
    slug = (text or "").lower().strip()
    slug = _SLUG_STRIP_RE.sub("", slug)
    slug = _SLUG_SEPARATOR_RE.sub("-", slug)
    return slug.strip("-")


# =============================================================================
# Metadata Extraction
# =============================================================================

TITLE_PROPERTY_NAMES = ("Name", "Title")
DEFAULT_TITLE = "Untitled"


def extract_title(page: dict) -> str:
    """Extract the page title from its "Name" (or "Title") property.

    Returns "Untitled" if neither property exists or the one found is not a
    title property.
    """
    props = _as_dict(_as_dict(page).get("properties"))

    prop = None
    for name in TITLE_PROPERTY_NAMES:
        if name in props:
            prop = props[name]
            break

    value = parse_property(prop) if prop is not None else None
    if not isinstance(value, TitleValue):
        return DEFAULT_TITLE
    return "".join(span.text for span in value.spans)


def extract_metadata(page: dict) -> PageMetadata:
    """Extract fixed page fields and select/multi_select/date properties.

    Args:
        page: Notion page object.

    Returns:
        PageMetadata. Property names are lower-cased; when two names collide
        the later one in the property bag wins.
    """
    page = _as_dict(page)
    fields: dict[str, Any] = {}

    for name, prop in _as_dict(page.get("properties")).items():
        value = parse_property(prop)
        key = str(name).lower()
        if isinstance(value, SelectValue):
            fields[key] = value.name
        elif isinstance(value, MultiSelectValue):
            fields[key] = value.names
        elif isinstance(value, DateValue):
            fields[key] = value.start

    return PageMetadata(
        created_time=page.get("created_time") or "",
        last_edited_time=page.get("last_edited_time") or "",
        url=page.get("url") or "",
        fields=MappingProxyType(fields),
    )


# =============================================================================
# Block Rendering
# =============================================================================

HEADING_MARKERS = {
    BlockType.HEADING_1: "# ",
    BlockType.HEADING_2: "## ",
    BlockType.HEADING_3: "### ",
}

HORIZONTAL_RULE = "---\n\n"


def render_block(block: ContentBlock) -> str:
    """Render a single block to its body fragment.

    Unsupported blocks, images without a URL, and blocks whose payload does
    not match their type render as "".
    """
    block_type = block.type
    payload = block.payload

    if block_type == BlockType.DIVIDER:
        return HORIZONTAL_RULE

    if block_type == BlockType.IMAGE:
        if not isinstance(payload, ImagePayload) or not payload.url:
            return ""
        return f"![{render_rich_text(payload.caption)}]({payload.url})\n\n"

    if block_type == BlockType.TO_DO:
        if not isinstance(payload, TodoPayload):
            return ""
        marker = "- [x] " if payload.checked else "- [ ] "
        return f"{marker}{render_rich_text(payload.rich_text)}\n"

    if block_type == BlockType.CODE:
        if not isinstance(payload, CodePayload):
            return ""
        code = render_rich_text(payload.rich_text)
        return f"```{payload.language}\n{code}\n```\n\n"

    if block_type == BlockType.CALLOUT:
        if not isinstance(payload, CalloutPayload):
            return ""
        return f"> {payload.emoji} {render_rich_text(payload.rich_text)}\n\n"

    if block_type in TEXT_BLOCK_TYPES and isinstance(payload, TextPayload):
        text = render_rich_text(payload.rich_text)
        if block_type == BlockType.PARAGRAPH:
            return f"{text}\n\n"
        elif block_type in HEADING_MARKERS:
            return f"{HEADING_MARKERS[block_type]}{text}\n\n"
        elif block_type == BlockType.BULLETED_LIST_ITEM:
            return f"* {text}\n"
        elif block_type == BlockType.NUMBERED_LIST_ITEM:
            # No running counter
            return f"1. {text}\n"
        elif block_type == BlockType.QUOTE:
            return f"> {text}\n\n"

    logger.debug(f"Skipping unsupported block {block.id or '?'} ({block.tag or block_type.value})")
    return ""


def render_blocks(blocks: Sequence[ContentBlock]) -> str:
    """Render blocks to a body string, in order, with no extra separators."""
    return "".join(render_block(block) for block in blocks)


# =============================================================================
# Document Builder
# =============================================================================

def build_document(
    page: Mapping[str, Any],
    blocks: Iterable[Union[dict, ContentBlock]]
) -> PageDocument:
    """Build the PageDocument for one page.

    Args:
        page: Notion page object (must have an "id").
        blocks: The page's top-level blocks, raw or already parsed.

    Returns:
        A complete PageDocument.

    Raises:
        PageStructureError: If page is not a mapping, has no id, or blocks
            is None.
    """
    if not isinstance(page, Mapping):
        raise PageStructureError(f"Page must be a mapping, got {type(page).__name__}")
    page_id = page.get("id")
    if not page_id:
        raise PageStructureError("Page has no id")
    if blocks is None:
        raise PageStructureError(f"No blocks given for page {page_id}")

    parsed = [b if isinstance(b, ContentBlock) else parse_block(b) for b in blocks]
    page_dict = dict(page)

    return PageDocument(
        id=page_id,
        title=extract_title(page_dict),
        body=render_blocks(parsed),
        metadata=extract_metadata(page_dict),
    )


# =============================================================================
# Configuration
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"
DEFAULT_CONFIG_FILE = "ssg_config.json"
# Notion caps page_size at 100
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class SiteConfig:
    """Immutable site settings. Use dataclasses.replace to override."""
    data_source_id: str = ""
    token_file: Optional[Path] = None
    page_ids: tuple[str, ...] = ()
    notion_version: str = NOTION_VERSION
    page_size: int = MAX_PAGE_SIZE


def load_config(path: Union[str, Path] = DEFAULT_CONFIG_FILE) -> SiteConfig:
    """Load SiteConfig from a JSON file.

    Raises:
        ConfigError: If the file is missing, is not valid JSON, or is not a
            JSON object.
    """
    config_path = Path(path).expanduser()
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a JSON object: {config_path}")

    page_ids = raw.get("page_ids") or []
    if not isinstance(page_ids, list) or not all(isinstance(p, str) for p in page_ids):
        raise ConfigError(f"page_ids must be a list of strings: {config_path}")

    page_size = raw.get("page_size", MAX_PAGE_SIZE)
    # bool is an int subclass
    if isinstance(page_size, bool) or not isinstance(page_size, int) \
            or not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ConfigError(
            f"page_size must be an integer from 1 to {MAX_PAGE_SIZE}: {config_path}"
        )

    token_file = raw.get("token_file")
    return SiteConfig(
        data_source_id=raw.get("data_source_id") or "",
        token_file=Path(token_file).expanduser() if token_file else None,
        page_ids=tuple(page_ids),
        notion_version=raw.get("notion_version") or NOTION_VERSION,
        page_size=page_size,
    )


def read_token(path: Optional[Path]) -> str:
    """Read the Notion token from a file."""
    if path is None:
        raise ConfigError("No Notion token file. Set token_file or pass --token-file <path>.")
    token_path = Path(path).expanduser()
    if not token_path.exists():
        raise ConfigError(f"Token file not found: {token_path}")
    token = token_path.read_text().strip()
    if not token:
        raise ConfigError(f"Token file is empty: {token_path}")
    return token


# =============================================================================
# Notion API Source
# =============================================================================

class NotionSource:
    """Sequential, non-retrying reader for pages and blocks.

    Use as a context manager so the underlying httpx.Client is closed.
    """

    def __init__(
        self,
        config: SiteConfig,
        token: str,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.config = config
        self._client = httpx.Client(
            base_url=NOTION_API_BASE,
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": config.notion_version,
                "Content-Type": "application/json",
            },
            timeout=30.0,
            transport=transport,
        )

    def __enter__(self) -> "NotionSource":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None
    ) -> dict:
        if method == "GET":
            response = self._client.get(endpoint, params=params)
        elif method == "POST":
            response = self._client.post(endpoint, json=json_body or {})
        else:
            raise ValueError(f"Unsupported method: {method}")
        response.raise_for_status()
        return response.json()

    def fetch_page(self, page_id: str) -> dict:
        """Fetch page metadata (properties, timestamps, url)."""
        return self._request("GET", f"/pages/{page_id}")

    def fetch_blocks(self, block_id: str) -> list[dict]:
        """Fetch the top-level children of a page or block.

        Args:
            block_id: The parent page/block ID.

        Returns:
            All children, following next_cursor until has_more is false
            or no cursor is returned.
        """
        blocks = []
        start_cursor = None

        while True:
            params: dict = {"page_size": self.config.page_size}
            if start_cursor:
                params["start_cursor"] = start_cursor

            result = self._request("GET", f"/blocks/{block_id}/children", params=params)
            blocks.extend(result.get("results") or [])

            start_cursor = result.get("next_cursor")
            if not result.get("has_more") or not start_cursor:
                break

        return blocks

    def query_pages(self) -> list[dict]:
        """Query every row (page) of the configured data source."""
        if not self.config.data_source_id:
            raise ConfigError("No data_source_id configured")

        pages = []
        start_cursor = None

        while True:
            body: dict = {"page_size": self.config.page_size}
            if start_cursor:
                body["start_cursor"] = start_cursor

            result = self._request(
                "POST",
                f"/data_sources/{self.config.data_source_id}/query",
                json_body=body
            )
            pages.extend(result.get("results") or [])

            start_cursor = result.get("next_cursor")
            if not result.get("has_more") or not start_cursor:
                break

        return pages


def build_site(source: NotionSource, config: SiteConfig) -> list[PageDocument]:
    """Fetch and build every configured page, one at a time.

    Explicit page_ids take precedence over querying the data source.
    """
    if config.page_ids:
        pages = [source.fetch_page(page_id) for page_id in config.page_ids]
    else:
        pages = source.query_pages()
    logger.info(f"Building {len(pages)} page(s)")

    documents = []
    for page in pages:
        page_id = page.get("id")
        if not page_id:
            raise PageStructureError("Notion returned a page without an id")
        blocks = source.fetch_blocks(page_id)
        document = build_document(page, blocks)
        logger.info(f"Built {document.slug or document.id} ({len(blocks)} blocks)")
        documents.append(document)
    return documents


# =============================================================================
# Main Entry Point
# =============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Build documents from Notion and print them as JSON lines.

    Usage:
        notion-ssg                          # reads ./ssg_config.json
        notion-ssg --page <id> --page <id>  # only these pages
    """
    parser = argparse.ArgumentParser(description="Notion static site generator")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_FILE,
        help="Path to the JSON site config (default: ssg_config.json)"
    )
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (overrides config)"
    )
    parser.add_argument(
        "--page",
        action="append",
        dest="pages",
        help="Page ID to build (repeatable, overrides config page_ids)"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    try:
        config = load_config(args.config)
        if args.token_file:
            config = dataclasses.replace(config, token_file=Path(args.token_file).expanduser())
        if args.pages:
            config = dataclasses.replace(config, page_ids=tuple(args.pages))
        token = read_token(config.token_file)
    except ConfigError as e:
        logger.error(str(e))
        return 1
    logger.info(f"Config loaded from {args.config}")

    try:
        with NotionSource(config, token) as source:
            documents = build_site(source, config)
    except (ConfigError, PageStructureError) as e:
        logger.error(str(e))
        return 1
    except httpx.HTTPError as e:
        logger.error(f"Notion request failed: {e}")
        return 1

    for document in documents:
        sys.stdout.write(json.dumps(document.to_dict(), ensure_ascii=False) + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
