import tempfile
import unittest
import zipfile
from datetime import datetime
from pathlib import Path

from skillkit.backup import write_skills_backup
from skillkit.models import UserProject
from skillkit.projects import ProjectError, UserProjectRegistry, validate_user_project


class TestValidateUserProject(unittest.TestCase):
    def test_rejects_duplicate_name_ignoring_case(self) -> None:
        existing = [UserProject("Alpha", "/tmp/alpha"), UserProject("Beta", "/tmp/beta")]
        with self.assertRaises(ProjectError) as ctx:
            validate_user_project("alpha", "/tmp/new", existing)
        self.assertEqual(ctx.exception.code, "PROJECT_CONFLICT")

    def test_rejects_duplicate_path(self) -> None:
        with self.assertRaises(ProjectError):
            validate_user_project("Gamma", "/tmp/alpha", [UserProject("Alpha", "/tmp/alpha")])

    def test_allows_current_project_on_update(self) -> None:
        validate_user_project("Alpha", "/tmp/alpha", [UserProject("Alpha", "/tmp/alpha")], "Alpha")

    def test_requires_name_and_path(self) -> None:
        with self.assertRaises(ProjectError):
            validate_user_project("", "/tmp/x", [])
        with self.assertRaises(ProjectError):
            validate_user_project("x", "", [])


class TestUserProjectRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "user_projects.json"
        self.registry = UserProjectRegistry(self.path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_add_update_remove(self) -> None:
        self.assertEqual(self.registry.list_projects(), [])

        self.registry.add_project("  web ", " /src/web ")
        self.registry.add_project("api", "/src/api")
        self.assertEqual(
            self.registry.list_projects(), [UserProject("web", "/src/web"), UserProject("api", "/src/api")]
        )

        updated = self.registry.update_project("web", "site", "/src/site")
        self.assertEqual(updated, UserProject("site", "/src/site"))
        self.assertEqual(UserProjectRegistry(self.path).get("site").path, "/src/site")

        self.registry.remove_project("api")
        self.assertEqual([p.name for p in self.registry.list_projects()], ["site"])

    def test_missing_project_errors(self) -> None:
        with self.assertRaises(ProjectError) as ctx:
            self.registry.remove_project("ghost")
        self.assertEqual(ctx.exception.code, "PROJECT_NOT_FOUND")
        with self.assertRaises(ProjectError):
            self.registry.update_project("ghost", "x", "/x")

    def test_unreadable_file_is_an_error(self) -> None:
        self.path.write_text("{nope", encoding="utf-8")
        with self.assertRaises(ProjectError) as ctx:
            self.registry.list_projects()
        self.assertEqual(ctx.exception.code, "PROJECTS_PARSE_FAILED")


class TestSkillsBackup(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_zips_every_skill(self) -> None:
        skills = self.root / "skills"
        (skills / "pdf" / "scripts").mkdir(parents=True)
        (skills / "pdf" / "SKILL.md").write_text("---\nname: pdf\n---\n", encoding="utf-8")
        (skills / "pdf" / "scripts" / "run.py").write_text("print(1)\n", encoding="utf-8")

        result = write_skills_backup(skills, self.root / "backups", clock=lambda: datetime(2025, 3, 4, 5, 6, 7))

        self.assertTrue(result.success)
        self.assertEqual(result.backup_time, "2025-03-04 05:06:07")
        self.assertEqual(Path(result.backup_path).name, "skills_backup_20250304050607.zip")
        with zipfile.ZipFile(result.backup_path) as zf:
            names = set(zf.namelist())
            self.assertIn("pdf/SKILL.md", names)
            self.assertEqual(zf.read("pdf/scripts/run.py"), b"print(1)\n")
        self.assertEqual([p.name for p in (self.root / "backups").iterdir()], ["skills_backup_20250304050607.zip"])

    def test_missing_skills_folder_is_unsuccessful(self) -> None:
        result = write_skills_backup(self.root / "nope", self.root / "backups")

        self.assertFalse(result.success)
        self.assertIsNone(result.backup_path)
        self.assertFalse((self.root / "backups").exists())


if __name__ == "__main__":
    unittest.main()
