from __future__ import annotations

from dataclasses import dataclass, field
import io
import posixpath
from pathlib import PurePosixPath
from typing import Optional
import zipfile

from lxml import etree as LXML_ET

from .epub import CONTAINER_PATH, EPUB_MIMETYPE, MIMETYPE_PATH

CONTAINER_NS = "urn:oasis:names:tc:opendocument:xmlns:container"
OPF_NS = "http://www.idpf.org/2007/opf"
DC_NS = "http://purl.org/dc/elements/1.1/"
NCX_NS = "http://www.daisy.org/z3986/2005/ncx/"


class EpubStructureError(ValueError):
    pass


@dataclass
class EpubReport:
    title: Optional[str] = None
    author: Optional[str] = None
    language: Optional[str] = None
    identifier: Optional[str] = None
    chapter_paths: list[str] = field(default_factory=list)
    nav_labels: list[str] = field(default_factory=list)
    problems: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    def raise_for_problems(self) -> None:
        if self.problems:
            raise EpubStructureError("; ".join(self.problems))


def _xml_root_from_bytes(raw: bytes) -> LXML_ET._Element:
    parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True)
    return LXML_ET.fromstring(raw, parser=parser)


def _node_text(node: Optional[LXML_ET._Element]) -> Optional[str]:
    if node is None or node.text is None:
        return None
    return node.text


def _resolve_href(base_member: str, href: str) -> str:
    base_dir = PurePosixPath(base_member).parent.as_posix()
    if base_dir in {"", "."}:
        return posixpath.normpath(href)
    return posixpath.normpath(posixpath.join(base_dir, href))


def _check_mimetype(zf: zipfile.ZipFile, report: EpubReport) -> None:
    infos = zf.infolist()
    if not infos or infos[0].filename != MIMETYPE_PATH:
        report.problems.append("mimetype is not the first archive member")
        return
    first = infos[0]
    if first.compress_type != zipfile.ZIP_STORED:
        report.problems.append("mimetype is compressed")
    if zf.read(first) != EPUB_MIMETYPE:
        report.problems.append("mimetype content is not application/epub+zip")


def _package_path(zf: zipfile.ZipFile, names: set[str], report: EpubReport) -> Optional[str]:
    if CONTAINER_PATH not in names:
        report.problems.append(f"{CONTAINER_PATH} is missing")
        return None
    root = _xml_root_from_bytes(zf.read(CONTAINER_PATH))
    rootfile = root.find(f"{{{CONTAINER_NS}}}rootfiles/{{{CONTAINER_NS}}}rootfile")
    full_path = rootfile.get("full-path") if rootfile is not None else None
    if not full_path:
        report.problems.append("container.xml has no rootfile")
        return None
    if full_path not in names:
        report.problems.append(f"package document {full_path} is missing")
        return None
    return full_path


def _read_ncx(zf: zipfile.ZipFile, ncx_path: str, report: EpubReport) -> list[tuple[str, str]]:
    root = _xml_root_from_bytes(zf.read(ncx_path))
    uid = root.find(f"{{{NCX_NS}}}head/{{{NCX_NS}}}meta[@name='dtb:uid']")
    if uid is None or uid.get("content") != report.identifier:
        report.problems.append("toc.ncx dtb:uid does not match the package identifier")

    points: list[tuple[str, str]] = []
    nav_points = root.findall(f"{{{NCX_NS}}}navMap/{{{NCX_NS}}}navPoint")
    for expected_order, point in enumerate(nav_points, start=1):
        if point.get("playOrder") != str(expected_order):
            report.problems.append(f"navPoint {expected_order} has playOrder {point.get('playOrder')!r}")
        label = _node_text(point.find(f"{{{NCX_NS}}}navLabel/{{{NCX_NS}}}text")) or ""
        content = point.find(f"{{{NCX_NS}}}content")
        src = content.get("src", "") if content is not None else ""
        points.append((label, _resolve_href(ncx_path, src)))
    return points


def verify_epub(blob: bytes) -> EpubReport:
    """Reopen a generated archive and check its package structure."""
    report = EpubReport()
    try:
        zf = zipfile.ZipFile(io.BytesIO(blob), "r")
    except zipfile.BadZipFile:
        report.problems.append("not a zip archive")
        return report

    with zf:
        try:
            _inspect(zf, report)
        except LXML_ET.XMLSyntaxError as exc:
            report.problems.append(f"malformed XML: {exc}")
    return report


def _inspect(zf: zipfile.ZipFile, report: EpubReport) -> None:
    names = set(zf.namelist())
    _check_mimetype(zf, report)
    opf_path = _package_path(zf, names, report)
    if opf_path is None:
        return

    root = _xml_root_from_bytes(zf.read(opf_path))
    metadata = root.find(f"{{{OPF_NS}}}metadata")
    if metadata is not None:
        report.title = _node_text(metadata.find(f"{{{DC_NS}}}title"))
        report.author = _node_text(metadata.find(f"{{{DC_NS}}}creator"))
        report.language = _node_text(metadata.find(f"{{{DC_NS}}}language"))
        report.identifier = _node_text(metadata.find(f"{{{DC_NS}}}identifier"))
    if not report.title:
        report.problems.append("dc:title is empty")
    if not report.author:
        report.problems.append("dc:creator is empty")
    if not report.identifier:
        report.problems.append("dc:identifier is empty")

    manifest: dict[str, str] = {}
    for item in root.findall(f"{{{OPF_NS}}}manifest/{{{OPF_NS}}}item"):
        member_path = _resolve_href(opf_path, item.get("href", ""))
        if member_path not in names:
            report.problems.append(f"manifest item {item.get('id')} points at missing {member_path}")
        manifest[item.get("id", "")] = member_path

    spine = root.find(f"{{{OPF_NS}}}spine")
    itemrefs = spine.findall(f"{{{OPF_NS}}}itemref") if spine is not None else []
    if not itemrefs:
        report.problems.append("spine is empty")
    for itemref in itemrefs:
        idref = itemref.get("idref", "")
        if idref not in manifest:
            report.problems.append(f"spine references undeclared item {idref}")
            continue
        report.chapter_paths.append(manifest[idref])

    toc_id = spine.get("toc") if spine is not None else None
    if not toc_id or toc_id not in manifest:
        report.problems.append("spine has no navigation document")
        return
    ncx_path = manifest[toc_id]
    if ncx_path not in names:
        return
    points = _read_ncx(zf, ncx_path, report)
    report.nav_labels = [label for label, _ in points]
    if [src for _, src in points] != report.chapter_paths:
        report.problems.append("navigation order does not match spine order")
