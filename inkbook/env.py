from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional

DEFAULT_LANGUAGE = "ko"
UNTITLED_TITLE = "제목 없음"
UNKNOWN_AUTHOR = "Unknown"


def read_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value not in {None, ""}:
        return value

    file_var = os.getenv(f"{name}_FILE")
    if not file_var:
        return default

    try:
        content = Path(file_var).read_text(encoding="utf-8")
    except OSError:
        return default
    return content.rstrip("\r\n")


@dataclass(frozen=True)
class EpubSettings:
    language: str = DEFAULT_LANGUAGE
    untitled_title: str = UNTITLED_TITLE
    unknown_author: str = UNKNOWN_AUTHOR


def load_settings() -> EpubSettings:
    return EpubSettings(
        language=read_env("INKBOOK_DEFAULT_LANGUAGE", DEFAULT_LANGUAGE) or DEFAULT_LANGUAGE,
        untitled_title=read_env("INKBOOK_UNTITLED_TITLE", UNTITLED_TITLE) or UNTITLED_TITLE,
        unknown_author=read_env("INKBOOK_UNKNOWN_AUTHOR", UNKNOWN_AUTHOR) or UNKNOWN_AUTHOR,
    )
