from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from sigil.chunker import ChildContainerRoot
from sigil.constants import KIND_FOLDER
from sigil.errors import MalformedHeader
from sigil.pathutil import norm_path, safe_join
from sigil.reader import REASON_MERKLE, Valid, verify
from sigil.tree import (
    CHILDREN_DIRNAME,
    FOLDER_FILENAME,
    child_names,
    child_refs,
    create_tree,
    extract_tree,
    load_tree,
    verify_tree,
    write_tree,
)
from sigil.writer import create


def _populate(root: Path) -> dict:
    files = {
        "a.txt": b"alpha " * 300,
        "b.bin": bytes(range(256)) * 9,
        "nested/c.txt": b"charlie",
        "nested/deeper/d.txt": b"",
    }
    for name, data in files.items():
        p = root / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
    return files


class FolderContainerTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.base = Path(self.tmp.name)
        self.src = self.base / "src"
        self.src.mkdir()
        self.files = _populate(self.src)
        self.folder, self.children = create_tree(self.src, tier="reflection", chunk_size=256)

    def tearDown(self):
        self.tmp.cleanup()

    def test_folder_references_child_roots(self):
        self.assertEqual(self.folder.kind, KIND_FOLDER)
        names = sorted(self.files)
        self.assertEqual(child_names(self.folder), names)
        self.assertEqual(self.folder.chunk_count, len(names))
        for i, (name, ref) in enumerate(child_refs(self.folder)):
            self.assertEqual(ref.root, self.children[name].merkle_root)
            self.assertEqual(self.folder.chunk_ref(i), ChildContainerRoot(ref.root))
        self.assertIsInstance(verify(self.folder), Valid)

    def test_verify_tree(self):
        report = verify_tree(self.folder, self.children)
        self.assertTrue(report.ok)
        self.assertEqual(sorted(report.children), sorted(self.files))

    def test_substituted_child_is_reported(self):
        children = dict(self.children)
        children["a.txt"] = create(b"not the original", chunk_size=256)
        del children["nested/c.txt"]
        report = verify_tree(self.folder, children)
        self.assertFalse(report.ok)
        self.assertEqual(report.children["a.txt"].reason, REASON_MERKLE)
        self.assertEqual(report.missing, ["nested/c.txt"])

    def test_write_load_extract(self):
        treedir = self.base / "sealed"
        dst = write_tree(self.folder, self.children, treedir)
        self.assertEqual(dst, treedir / FOLDER_FILENAME)
        self.assertTrue((treedir / CHILDREN_DIRNAME / "nested" / "c.txt.sg1").is_file())
        folder, children = load_tree(treedir)
        self.assertTrue(verify_tree(folder, children).ok)
        out = self.base / "out"
        written = extract_tree(folder, children, out)
        self.assertEqual(len(written), len(self.files))
        for name, data in self.files.items():
            self.assertEqual((out / name).read_bytes(), data)

    def test_extract_rejects_mismatched_child(self):
        children = dict(self.children)
        children["b.bin"] = create(b"impostor")
        with self.assertRaises(MalformedHeader):
            extract_tree(self.folder, children, self.base / "out")

    def test_file_container_is_not_a_folder(self):
        with self.assertRaises(MalformedHeader):
            child_names(self.children["a.txt"])


class PathTests(unittest.TestCase):
    def test_norm_path(self):
        self.assertEqual(norm_path("a\\b/./c/"), "a/b/c")
        with self.assertRaises(ValueError):
            norm_path("../etc/passwd")
        with self.assertRaises(ValueError):
            norm_path("/./")

    def test_safe_join_stays_under_root(self):
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(safe_join(td, "x/y"), Path(td).resolve() / "x" / "y")
            with self.assertRaises(ValueError):
                safe_join(td, "x/../../y")


if __name__ == "__main__":
    unittest.main()
