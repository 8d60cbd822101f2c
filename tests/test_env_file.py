import os
import tempfile
import unittest
from pathlib import Path

from inkbook.env import EpubSettings, load_settings, read_env


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


class EnvFileTests(unittest.TestCase):
    def test_read_env_prefers_plain_value(self) -> None:
        prev_plain = os.environ.get("INKBOOK_SAMPLE")
        prev_file = os.environ.get("INKBOOK_SAMPLE_FILE")
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False) as tmp:
            tmp.write("from-file")
            file_path = tmp.name
        try:
            os.environ["INKBOOK_SAMPLE"] = "from-env"
            os.environ["INKBOOK_SAMPLE_FILE"] = file_path
            self.assertEqual(read_env("INKBOOK_SAMPLE"), "from-env")
        finally:
            Path(file_path).unlink(missing_ok=True)
            _restore_env("INKBOOK_SAMPLE", prev_plain)
            _restore_env("INKBOOK_SAMPLE_FILE", prev_file)

    def test_read_env_supports_file_suffix(self) -> None:
        prev_plain = os.environ.get("INKBOOK_SAMPLE")
        prev_file = os.environ.get("INKBOOK_SAMPLE_FILE")
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False) as tmp:
            tmp.write("from-file\n")
            file_path = tmp.name
        try:
            os.environ.pop("INKBOOK_SAMPLE", None)
            os.environ["INKBOOK_SAMPLE_FILE"] = file_path
            self.assertEqual(read_env("INKBOOK_SAMPLE"), "from-file")
        finally:
            Path(file_path).unlink(missing_ok=True)
            _restore_env("INKBOOK_SAMPLE", prev_plain)
            _restore_env("INKBOOK_SAMPLE_FILE", prev_file)

    def test_read_env_falls_back_when_file_missing(self) -> None:
        prev_plain = os.environ.get("INKBOOK_SAMPLE")
        prev_file = os.environ.get("INKBOOK_SAMPLE_FILE")
        try:
            os.environ.pop("INKBOOK_SAMPLE", None)
            os.environ["INKBOOK_SAMPLE_FILE"] = "/nonexistent/inkbook-sample"
            self.assertEqual(read_env("INKBOOK_SAMPLE", "fallback"), "fallback")
        finally:
            _restore_env("INKBOOK_SAMPLE", prev_plain)
            _restore_env("INKBOOK_SAMPLE_FILE", prev_file)

    def test_load_settings_reads_overrides(self) -> None:
        names = ("INKBOOK_DEFAULT_LANGUAGE", "INKBOOK_UNTITLED_TITLE", "INKBOOK_UNKNOWN_AUTHOR")
        previous = {name: os.environ.get(name) for name in names}
        try:
            os.environ["INKBOOK_DEFAULT_LANGUAGE"] = "en"
            os.environ["INKBOOK_UNTITLED_TITLE"] = "Untitled"
            os.environ["INKBOOK_UNKNOWN_AUTHOR"] = "Anonymous"
            self.assertEqual(
                load_settings(),
                EpubSettings(language="en", untitled_title="Untitled", unknown_author="Anonymous"),
            )
        finally:
            for name, value in previous.items():
                _restore_env(name, value)

    def test_load_settings_defaults(self) -> None:
        names = ("INKBOOK_DEFAULT_LANGUAGE", "INKBOOK_UNTITLED_TITLE", "INKBOOK_UNKNOWN_AUTHOR")
        previous = {name: os.environ.get(name) for name in names}
        try:
            for name in names:
                os.environ.pop(name, None)
            self.assertEqual(load_settings(), EpubSettings(language="ko", untitled_title="제목 없음", unknown_author="Unknown"))
        finally:
            for name, value in previous.items():
                _restore_env(name, value)


if __name__ == "__main__":
    unittest.main()
