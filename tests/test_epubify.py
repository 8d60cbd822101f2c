import json
import tempfile
import unittest
from pathlib import Path
import zipfile

from epubify import main


class EpubifyCliTests(unittest.TestCase):
    def _write_manuscript(self, tmp: str, payload: object) -> Path:
        path = Path(tmp) / "manuscript.json"
        path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        return path

    def test_exports_next_to_input_using_title(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manuscript = self._write_manuscript(
                tmp,
                {
                    "title": "시험작",
                    "author": "홍길동",
                    "chapters": [{"title": "1장", "content": "<p>안녕</p>"}],
                },
            )
            self.assertEqual(main([str(manuscript), "--check"]), 0)
            output = Path(tmp) / "시험작.epub"
            self.assertTrue(output.exists())
            with zipfile.ZipFile(output, "r") as zf:
                self.assertEqual(zf.namelist()[0], "mimetype")
                self.assertIn("OEBPS/chapter1.html", zf.namelist())

    def test_explicit_output_and_css(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manuscript = self._write_manuscript(tmp, {"title": "책", "author": "작가", "chapters": []})
            css = Path(tmp) / "book.css"
            css.write_text("p { margin: 0; }", encoding="utf-8")
            output = Path(tmp) / "out" / "book.epub"
            self.assertEqual(main([str(manuscript), "-o", str(output), "--css", str(css), "--repair-markup"]), 0)
            with zipfile.ZipFile(output, "r") as zf:
                self.assertEqual(zf.read("OEBPS/stylesheet.css").decode("utf-8"), "p { margin: 0; }")

    def test_missing_input_fails(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(main([str(Path(tmp) / "missing.json")]), 1)

    def test_missing_stylesheet_fails_without_output(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manuscript = self._write_manuscript(tmp, {"title": "책", "author": "작가", "chapters": []})
            self.assertEqual(main([str(manuscript), "--css", str(Path(tmp) / "missing.css")]), 1)
            self.assertFalse((Path(tmp) / "책.epub").exists())

    def test_invalid_json_fails(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "manuscript.json"
            path.write_text("{not json", encoding="utf-8")
            self.assertEqual(main([str(path)]), 1)

    def test_invalid_manuscript_fails_without_output(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manuscript = self._write_manuscript(tmp, {"title": "책", "author": "작가", "date": "어제"})
            self.assertEqual(main([str(manuscript)]), 1)
            self.assertFalse((Path(tmp) / "책.epub").exists())

    def test_non_object_manuscript_fails(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            manuscript = self._write_manuscript(tmp, ["책"])
            self.assertEqual(main([str(manuscript)]), 1)


if __name__ == "__main__":
    unittest.main()
