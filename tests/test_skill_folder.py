import io
import tempfile
import unittest
import zipfile
from pathlib import Path

from skillkit.client import SkillkitError
from skillkit.skill_folder import (
    COPY_MARKER_FILENAME,
    compute_skill_folder_hash,
    find_skill_dirs,
    read_skill_frontmatter,
    safe_extract_zip,
    sanitize_name,
    strip_single_root,
)


def _zip(entries: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in entries.items():
            zf.writestr(name, text)
    return buf.getvalue()


class TestFolderHash(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name) / "skill"
        (self.dir / "scripts").mkdir(parents=True)
        (self.dir / "SKILL.md").write_text("---\nname: x\n---\n", encoding="utf-8")
        (self.dir / "scripts" / "run.sh").write_text("echo hi\n", encoding="utf-8")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_hash_is_stable_and_tracks_content(self) -> None:
        first = compute_skill_folder_hash(self.dir)
        self.assertEqual(first, compute_skill_folder_hash(self.dir))

        (self.dir / "scripts" / "run.sh").write_text("echo bye\n", encoding="utf-8")
        self.assertNotEqual(first, compute_skill_folder_hash(self.dir))

    def test_hash_ignores_vcs_and_copy_marker(self) -> None:
        before = compute_skill_folder_hash(self.dir)
        (self.dir / ".git").mkdir()
        (self.dir / ".git" / "HEAD").write_text("ref: main\n", encoding="utf-8")
        (self.dir / COPY_MARKER_FILENAME).write_text("/somewhere", encoding="utf-8")

        self.assertEqual(before, compute_skill_folder_hash(self.dir))

    def test_renaming_a_file_changes_hash(self) -> None:
        before = compute_skill_folder_hash(self.dir)
        (self.dir / "scripts" / "run.sh").rename(self.dir / "scripts" / "go.sh")
        self.assertNotEqual(before, compute_skill_folder_hash(self.dir))

    def test_missing_folder_raises(self) -> None:
        with self.assertRaises(SkillkitError) as ctx:
            compute_skill_folder_hash(self.dir / "nope")
        self.assertEqual(ctx.exception.code, "SKILL_NOT_FOUND")


class TestFrontmatter(unittest.TestCase):
    def test_reads_name_and_description(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            md = Path(td) / "SKILL.md"
            md.write_text("---\nname: pdf-tools\ndescription: >\n  Work with PDFs\n---\n# Body\n", encoding="utf-8")
            fm = read_skill_frontmatter(md)

        self.assertEqual(fm.name, "pdf-tools")
        self.assertEqual(fm.description, "Work with PDFs")

    def test_missing_or_unclosed_frontmatter(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            md = Path(td) / "SKILL.md"
            md.write_text("# no frontmatter\n", encoding="utf-8")
            with self.assertRaises(SkillkitError) as ctx:
                read_skill_frontmatter(md)
            self.assertEqual(ctx.exception.code, "FRONTMATTER_MISSING")

            md.write_text("---\nname: x\n", encoding="utf-8")
            with self.assertRaises(SkillkitError) as ctx:
                read_skill_frontmatter(md)
            self.assertEqual(ctx.exception.code, "FRONTMATTER_INVALID")


class TestSanitizeName(unittest.TestCase):
    def test_sanitize(self) -> None:
        self.assertEqual(sanitize_name("My Skill"), "my-skill")
        self.assertEqual(sanitize_name("../etc/passwd"), "etc-passwd")
        self.assertEqual(sanitize_name("..."), "unnamed-skill")
        self.assertEqual(len(sanitize_name("a" * 400)), 255)


class TestArchives(unittest.TestCase):
    def test_extract_rejects_path_traversal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(SkillkitError) as ctx:
                safe_extract_zip(_zip({"../evil.txt": "x"}), Path(td) / "out")
            self.assertEqual(ctx.exception.code, "ARCHIVE_INVALID")
            self.assertFalse((Path(td) / "evil.txt").exists())

    def test_extract_rejects_invalid_archive(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(SkillkitError):
                safe_extract_zip(b"not a zip", Path(td) / "out")

    def test_extract_and_strip_single_root(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            out = Path(td) / "out"
            safe_extract_zip(
                _zip({"repo-main/skills/a/SKILL.md": "---\nname: a\n---\n", "repo-main/README.md": "hi"}), out
            )
            root = strip_single_root(out)

            self.assertEqual(root.name, "repo-main")
            self.assertEqual(find_skill_dirs(root), [root / "skills" / "a"])

    def test_find_skill_dirs_skips_excluded_folders(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            for rel in ("a", "node_modules/b", ".git/c", "nested/d"):
                (root / rel).mkdir(parents=True)
                (root / rel / "SKILL.md").write_text("x", encoding="utf-8")

            self.assertEqual(find_skill_dirs(root), [root / "a", root / "nested" / "d"])


if __name__ == "__main__":
    unittest.main()
