import tempfile
import unittest
from pathlib import Path

from ftb.search import search_tree


class SearchTreeTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        (self.root / "docs" / "old").mkdir(parents=True)
        (self.root / "notes.txt").write_text("a")
        (self.root / "docs" / "notes.txt").write_text("b")
        (self.root / "docs" / "report.txt").write_text("c")

    def tearDown(self):
        self._tmp.cleanup()

    def test_path_directory_has_trailing_slash(self):
        self.assertEqual(search_tree(self.root, "path", "/docs"), ["/docs/"])
        self.assertEqual(search_tree(self.root, "path", "/docs/"), ["/docs/"])
        self.assertEqual(search_tree(self.root, "path", "/"), ["/"])

    def test_path_file(self):
        self.assertEqual(search_tree(self.root, "path", "/docs/report.txt"),
                         ["/docs/report.txt"])
        self.assertEqual(search_tree(self.root, "PATH", "notes.txt"), ["/notes.txt"])

    def test_path_missing(self):
        self.assertEqual(search_tree(self.root, "path", "/nothing.txt"), [])

    def test_filename_exact(self):
        self.assertCountEqual(search_tree(self.root, "filename", "notes.txt"),
                              ["/notes.txt", "/docs/notes.txt"])
        self.assertEqual(search_tree(self.root, "filename", "notes"), [])
        self.assertEqual(search_tree(self.root, "filename", "old"), ["/docs/old"])

    def test_substring(self):
        self.assertCountEqual(search_tree(self.root, "substring", "o"),
                              ["/notes.txt", "/docs", "/docs/notes.txt",
                               "/docs/report.txt", "/docs/old"])
        self.assertEqual(search_tree(self.root, "substring", "port"),
                         ["/docs/report.txt"])

    def test_traversal_and_unknown_type(self):
        self.assertEqual(search_tree(self.root, "path", "/../etc"), [])
        self.assertEqual(search_tree(self.root, "regex", "notes"), [])

    def test_dots_in_name_query_are_plain_text(self):
        (self.root / "docs" / "a..b.txt").write_text("d")
        self.assertEqual(search_tree(self.root, "substring", ".."), ["/docs/a..b.txt"])
        self.assertEqual(search_tree(self.root, "filename", "a..b.txt"),
                         ["/docs/a..b.txt"])
        self.assertEqual(search_tree(self.root, "filename", ".."), [])


if __name__ == "__main__":
    unittest.main()
