from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields
from functools import lru_cache
import io
import logging
from pathlib import Path
import re
from typing import Optional, Sequence, Union
import uuid
import zipfile

from jinja2 import Environment, FileSystemLoader, select_autoescape
from lxml import etree as LXML_ET
from lxml import html as LXML_HTML
from markupsafe import Markup

from .env import EpubSettings, load_settings
from .models import ArchiveMember, BookMetadata, Chapter, chapter_from_dict, metadata_from_dict

logger = logging.getLogger("inkbook.epub")


class EpubInputError(ValueError):
    """Caller input that cannot be turned into a book (wrong types, bad date or language)."""


class EpubGenerationError(RuntimeError):
    """The archive could not be built; no partial output exists."""


@dataclass
class _BuildSection:
    index: int
    item_id: str
    title: str
    href: str


EPUB_MIMETYPE = b"application/epub+zip"
MIMETYPE_PATH = "mimetype"
CONTAINER_PATH = "META-INF/container.xml"
CONTENT_DIR = "OEBPS"
PACKAGE_HREF = "content.opf"
TOC_HREF = "toc.ncx"
STYLESHEET_HREF = "stylesheet.css"
NO_CONTENT_HTML = "<p>(내용 없음)</p>"
EPUB_TEMPLATES_DIR = Path(__file__).resolve().parent / "epub_templates"
LANGUAGE_RE = re.compile(r"^[A-Za-z]{2,3}(?:-[A-Za-z0-9]{1,8})*$")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
UNSAFE_FILENAME_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')
XML_ILLEGAL_RE = re.compile("[^\t\n\r\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")

_XML_ENTITIES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&apos;",
}


def package_member(href: str) -> str:
    return f"{CONTENT_DIR}/{href}"


def chapter_item_id(index: int) -> str:
    return f"chapter{index}"


def chapter_href(index: int) -> str:
    return f"chapter{index}.html"


def chapter_path(index: int) -> str:
    return package_member(chapter_href(index))


PACKAGE_PATH = package_member(PACKAGE_HREF)
TOC_PATH = package_member(TOC_HREF)
STYLESHEET_PATH = package_member(STYLESHEET_HREF)


def escape_xml(text: object) -> Markup:
    """Escape the five XML special characters.

    Not idempotent: escaping already-escaped text escapes the ampersands again.
    The result is ``Markup`` so templates embed it without a second pass.
    """
    return Markup("".join(_XML_ENTITIES.get(ch, ch) for ch in str(text)))


def new_identifier() -> str:
    return f"urn:uuid:{uuid.uuid4()}"


@lru_cache(maxsize=1)
def _epub_template_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(EPUB_TEMPLATES_DIR)),
        autoescape=select_autoescape(
            enabled_extensions=("xml", "xhtml", "html", "j2"),
            default_for_string=False,
        ),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["xml"] = escape_xml
    return env


def _render_epub_template(template_name: str, **context: object) -> str:
    return _epub_template_env().get_template(template_name).render(**context)


@lru_cache(maxsize=1)
def default_stylesheet() -> str:
    return (EPUB_TEMPLATES_DIR / STYLESHEET_HREF).read_text(encoding="utf-8")


def _text_field(value: object, field_name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise EpubInputError(f"{field_name} must be a string, got {type(value).__name__}")
    return value


def _plain_text(value: str, field_name: str) -> str:
    # Vertical tab and form feed are line breaks pasted from word processors.
    cleaned = XML_ILLEGAL_RE.sub(lambda match: " " if match.group() in "\x0b\x0c" else "", value)
    if cleaned != value:
        logger.debug("dropped characters not allowed in XML from %s", field_name)
    return cleaned


def _markup_field(value: object, field_name: str) -> str:
    text = _text_field(value, field_name)
    match = XML_ILLEGAL_RE.search(text)
    if match:
        raise EpubInputError(f"{field_name} contains a character not allowed in XML: {match.group()!r}")
    return text


def _metadata_fields(metadata: object) -> dict:
    if metadata is None:
        return {}
    if isinstance(metadata, BookMetadata):
        return {item.name: getattr(metadata, item.name) for item in fields(metadata)}
    if isinstance(metadata, Mapping):
        return metadata_from_dict(dict(metadata))
    raise EpubInputError(f"metadata must be a mapping or BookMetadata, got {type(metadata).__name__}")


def _normalize_date(raw: str, today: Optional[dt.date]) -> str:
    value = raw.strip()
    if not value:
        return (today or dt.date.today()).isoformat()
    if not ISO_DATE_RE.match(value):
        raise EpubInputError(f"date must be YYYY-MM-DD, got {raw!r}")
    try:
        dt.date.fromisoformat(value)
    except ValueError as exc:
        raise EpubInputError(f"date is not a calendar date: {raw!r}") from exc
    return value


def _coerce_chapter(entry: object, position: int) -> Chapter:
    if isinstance(entry, Chapter):
        raw = entry
    elif isinstance(entry, Mapping):
        raw = chapter_from_dict(dict(entry))
    else:
        raise EpubInputError(f"chapter {position} must be a mapping or Chapter, got {type(entry).__name__}")
    title = _plain_text(_text_field(raw.title, f"chapter {position} title"), f"chapter {position} title")
    content = _markup_field(raw.content, f"chapter {position} content")
    if not title.strip():
        title = f"Chapter {position}"
    return Chapter(title=title, content=content)


def normalize(
    metadata: Union[BookMetadata, Mapping, None],
    chapters: Optional[Iterable[Union[Chapter, Mapping]]],
    *,
    today: Optional[dt.date] = None,
    fallback_content: Optional[str] = None,
    settings: Optional[EpubSettings] = None,
) -> tuple[BookMetadata, list[Chapter]]:
    settings = settings or load_settings()
    raw = _metadata_fields(metadata)

    title = _plain_text(_text_field(raw.get("title"), "title"), "title")
    author = _plain_text(_text_field(raw.get("author"), "author"), "author")
    language = _text_field(raw.get("language"), "language").strip()
    date = _text_field(raw.get("date"), "date")

    if not title.strip():
        logger.debug("book title missing, using placeholder %r", settings.untitled_title)
        title = settings.untitled_title
    if not author.strip():
        logger.debug("book author missing, using placeholder %r", settings.unknown_author)
        author = settings.unknown_author
    language = language or settings.language
    if not LANGUAGE_RE.match(language):
        raise EpubInputError(f"language must be a short language code, got {language!r}")
    meta = BookMetadata(title=title, author=author, language=language, date=_normalize_date(date, today))

    if chapters is None:
        chapters = []
    if isinstance(chapters, (str, bytes)) or not isinstance(chapters, Iterable):
        raise EpubInputError("chapters must be a list of chapters")
    normalized = [_coerce_chapter(entry, position) for position, entry in enumerate(chapters, start=1)]

    if not normalized:
        content = _markup_field(fallback_content, "fallback content")
        logger.debug("no chapters supplied, synthesizing one from the book title")
        normalized.append(Chapter(title=meta.title, content=content if content.strip() else NO_CONTENT_HTML))
    return meta, normalized


def _sections(chapters: Sequence[Chapter]) -> list[_BuildSection]:
    return [
        _BuildSection(
            index=index,
            item_id=chapter_item_id(index),
            title=chapter.title,
            href=chapter_href(index),
        )
        for index, chapter in enumerate(chapters, start=1)
    ]


def render_container() -> str:
    return _render_epub_template("container.xml.j2", package_path=PACKAGE_PATH)


def render_package(meta: BookMetadata, chapters: Sequence[Chapter], identifier: str) -> str:
    return _render_epub_template(
        "content.opf.j2",
        meta=meta,
        identifier=identifier,
        toc_href=TOC_HREF,
        stylesheet_href=STYLESHEET_HREF,
        sections=_sections(chapters),
    )


def render_toc(meta: BookMetadata, chapters: Sequence[Chapter], identifier: str) -> str:
    return _render_epub_template("toc.ncx.j2", meta=meta, identifier=identifier, sections=_sections(chapters))


def render_stylesheet(css_text: Optional[str] = None) -> str:
    if css_text and css_text.strip():
        return css_text
    return default_stylesheet()


def repair_markup(content: str) -> str:
    """Re-serialize an HTML fragment as well-formed XHTML."""
    if not content.strip():
        return content
    parts: list[str] = []
    for fragment in LXML_HTML.fragments_fromstring(content):
        if isinstance(fragment, str):
            parts.append(str(escape_xml(fragment)))
        else:
            parts.append(LXML_ET.tostring(fragment, method="xml", encoding="unicode"))
    return "".join(parts)


def render_chapter(chapter: Chapter, lang: str, *, repair: bool = False) -> str:
    content = repair_markup(chapter.content) if repair else chapter.content
    return _render_epub_template(
        "chapter.xhtml.j2",
        lang=lang,
        title=chapter.title,
        stylesheet_href=STYLESHEET_HREF,
        content=Markup(content),
    )


def build_members(
    meta: BookMetadata,
    chapters: Sequence[Chapter],
    identifier: str,
    *,
    css_text: Optional[str] = None,
    repair: bool = False,
) -> list[ArchiveMember]:
    members = [
        ArchiveMember(MIMETYPE_PATH, EPUB_MIMETYPE, store_uncompressed=True),
        ArchiveMember(CONTAINER_PATH, render_container()),
        ArchiveMember(PACKAGE_PATH, render_package(meta, chapters, identifier)),
        ArchiveMember(TOC_PATH, render_toc(meta, chapters, identifier)),
        ArchiveMember(STYLESHEET_PATH, render_stylesheet(css_text)),
    ]
    for index, chapter in enumerate(chapters, start=1):
        members.append(ArchiveMember(chapter_path(index), render_chapter(chapter, meta.language, repair=repair)))
    return members


def assemble(members: Sequence[ArchiveMember]) -> bytes:
    seen: set[str] = set()
    for member in members:
        if member.path in seen:
            raise ValueError(f"duplicate archive member: {member.path}")
        seen.add(member.path)

    mimetype = next((member for member in members if member.path == MIMETYPE_PATH), None)
    if mimetype is None:
        mimetype = ArchiveMember(MIMETYPE_PATH, EPUB_MIMETYPE, store_uncompressed=True)
    elif mimetype.payload() != EPUB_MIMETYPE:
        raise ValueError("mimetype member must contain exactly application/epub+zip")

    buffer = io.BytesIO()
    try:
        with zipfile.ZipFile(buffer, "w") as zf:
            # EPUB readers sniff the first local header: mimetype goes first, stored.
            zf.writestr(_zip_info(MIMETYPE_PATH, zipfile.ZIP_STORED), EPUB_MIMETYPE)
            for member in members:
                if member.path == MIMETYPE_PATH:
                    continue
                compress_type = zipfile.ZIP_STORED if member.store_uncompressed else zipfile.ZIP_DEFLATED
                zf.writestr(_zip_info(member.path, compress_type), member.payload())
    except MemoryError as exc:
        raise EpubGenerationError("not enough memory to assemble the EPUB archive") from exc
    return buffer.getvalue()


def _zip_info(path: str, compress_type: int) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(path)
    info.compress_type = compress_type
    info.external_attr = 0o644 << 16
    return info


def generate_epub(
    metadata: Union[BookMetadata, Mapping, None],
    chapters: Optional[Iterable[Union[Chapter, Mapping]]] = None,
    *,
    today: Optional[dt.date] = None,
    css_text: Optional[str] = None,
    repair_markup: bool = False,
    fallback_content: Optional[str] = None,
    settings: Optional[EpubSettings] = None,
) -> bytes:
    """Build a complete EPUB archive in memory and return its bytes.

    Missing title/author and an empty chapter list are filled in with
    placeholders; malformed input raises ``EpubInputError`` before anything
    is rendered.
    """
    meta, normalized = normalize(
        metadata,
        chapters,
        today=today,
        fallback_content=fallback_content,
        settings=settings,
    )
    identifier = new_identifier()
    members = build_members(meta, normalized, identifier, css_text=css_text, repair=repair_markup)
    blob = assemble(members)
    logger.info(
        "generated epub title=%r chapters=%d bytes=%d",
        meta.title,
        len(normalized),
        len(blob),
    )
    return blob


def epub_filename(title: Optional[str], fallback: str = "story") -> str:
    cleaned = UNSAFE_FILENAME_RE.sub("_", title or "").strip(" ._")
    return f"{cleaned or fallback}.epub"
