from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass
class BookMetadata:
    title: str
    author: str
    language: str = ""
    date: str = ""


@dataclass
class Chapter:
    title: str
    content: str = ""


@dataclass(frozen=True)
class ArchiveMember:
    path: str
    data: Union[bytes, str]
    store_uncompressed: bool = False

    def payload(self) -> bytes:
        if isinstance(self.data, bytes):
            return self.data
        return self.data.encode("utf-8")


def metadata_from_dict(data: dict) -> dict:
    """Pick the known metadata keys out of a loose mapping.

    Values are returned as-is; type checks happen in the normalizer.
    """
    return {key: data.get(key) for key in ("title", "author", "language", "date")}


def chapter_from_dict(data: dict) -> Chapter:
    return Chapter(title=data.get("title", ""), content=data.get("content", ""))
