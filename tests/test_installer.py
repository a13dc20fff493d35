import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

from skillkit.agent_apps import AgentAppRegistry
from skillkit.client import SkillkitError
from skillkit.installer import InstallOrchestrator
from skillkit.linker import SkillLinker
from skillkit.lock import LockLedger
from skillkit.models import (
    InstallGithubRequest,
    InstallMethod,
    InstallNativeRequest,
    InstallScope,
    InstallUnknownRequest,
    LocalSourceType,
    ManageSkillAgentAppsRequest,
)
from skillkit.scanner import SkillScanner
from skillkit.skill_folder import COPY_MARKER_FILENAME


def _write_skill(folder: Path, name: str, body: str = "Body\n") -> Path:
    folder.mkdir(parents=True, exist_ok=True)
    (folder / "SKILL.md").write_text(f"---\nname: {name}\ndescription: {name} skill\n---\n{body}", encoding="utf-8")
    return folder


class _Workspace(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.home = self.root / "home"
        self.home.mkdir()
        self.agents = AgentAppRegistry(home=self.home, user_apps_path=self.root / "user_agent_apps.json")
        self.ledger = LockLedger(self.home / ".agents" / ".skill-lock.json")
        self.scanner = SkillScanner(agents=self.agents, ledger=self.ledger, canonical_root=self.home / ".agents" / "skills")
        self.orchestrator = InstallOrchestrator(ledger=self.ledger, scanner=self.scanner, agents=self.agents)
        self.source = _write_skill(self.root / "src" / "my-skill", "my-skill")

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    @property
    def canonical(self) -> Path:
        return self.home / ".agents" / "skills" / "my-skill"

    def agent_entry(self, agent_dir: str) -> Path:
        return self.home / agent_dir / "skills" / "my-skill"

    async def install_native(self, *agent_ids: str, method: InstallMethod = InstallMethod.SYMLINK):
        return await self.orchestrator.install_from_native(
            InstallNativeRequest(
                name="my-skill",
                tmp_path=str(self.source),
                skill_path="my-skill/SKILL.md",
                agent_apps=tuple(agent_ids),
                method=method,
            )
        )


class TestInstall(_Workspace):
    async def test_native_install_creates_canonical_links_and_ledger_entry(self) -> None:
        result = await self.install_native("codex", "cursor")

        self.assertTrue(result.success, result.stderr)
        self.assertTrue((self.canonical / "SKILL.md").is_file())
        self.assertTrue(self.agent_entry(".codex").is_symlink())
        self.assertEqual(self.agent_entry(".cursor").resolve(), self.canonical.resolve())

        entry = await self.ledger.get("my-skill")
        self.assertEqual(entry.source, "my-skill")
        self.assertEqual(entry.source_type, "native")
        self.assertEqual(entry.source_url, str(self.source))
        self.assertTrue(entry.skill_folder_hash)

    async def test_copy_then_symlink_leaves_one_record_with_latest_method(self) -> None:
        await self.install_native("codex", method=InstallMethod.COPY)
        self.assertTrue((self.agent_entry(".codex") / COPY_MARKER_FILENAME).is_file())
        first = await self.scanner.list_skills()
        self.assertEqual([a.method for a in first[0].installed_agent_apps], [InstallMethod.COPY])

        await self.install_native("codex", method=InstallMethod.SYMLINK)

        skills = await self.scanner.list_skills()
        self.assertEqual([s.name for s in skills], ["my-skill"])
        apps = skills[0].installed_agent_apps
        self.assertEqual(len(apps), 1)
        self.assertEqual(apps[0].id, "codex")
        self.assertEqual(apps[0].method, InstallMethod.SYMLINK)
        self.assertEqual(skills[0].source_type, LocalSourceType.NATIVE)

    async def test_reinstall_replaces_canonical_content(self) -> None:
        await self.install_native("codex")
        (self.source / "extra.md").write_text("new\n", encoding="utf-8")

        await self.install_native("codex")

        self.assertTrue((self.canonical / "extra.md").is_file())
        self.assertTrue((self.agent_entry(".codex") / "extra.md").is_file())

    async def test_partial_failure_is_reported_and_ledger_still_written(self) -> None:
        result = await self.install_native("codex", "no-such-agent")

        self.assertFalse(result.success)
        self.assertIn("no-such-agent", result.stderr)
        self.assertIn("codex", result.stdout)
        self.assertIsNotNone(await self.ledger.get("my-skill"))

    async def test_github_install_records_owner_repo_and_fingerprint(self) -> None:
        result = await self.orchestrator.install_from_github(
            InstallGithubRequest(
                name="my-skill",
                tmp_path=str(self.source),
                skill_path="skills/my-skill/SKILL.md",
                source_url="https://github.com/Acme/skills",
                agent_apps=("codex",),
                skill_folder_hash="tree-sha-1",
            )
        )

        self.assertTrue(result.success)
        entry = await self.ledger.get("my-skill")
        self.assertEqual(entry.source, "Acme/skills")
        self.assertEqual(entry.source_type, "github")
        self.assertEqual(entry.source_url, "https://github.com/Acme/skills")
        self.assertEqual(entry.skill_path, "skills/my-skill/SKILL.md")
        self.assertEqual(entry.skill_folder_hash, "tree-sha-1")

        skills = await self.scanner.list_skills()
        self.assertEqual(skills[0].source_type, LocalSourceType.GITHUB)

    async def test_project_scope_install(self) -> None:
        project = self.root / "proj"
        project.mkdir()
        result = await self.orchestrator.install_from_native(
            InstallNativeRequest(
                name="my-skill",
                tmp_path=str(self.source),
                skill_path="my-skill/SKILL.md",
                agent_apps=("codex",),
                scope=InstallScope.PROJECT,
                project_path=str(project),
            )
        )

        self.assertTrue(result.success, result.stderr)
        self.assertTrue((project / ".agents" / "skills" / "my-skill" / "SKILL.md").is_file())
        self.assertTrue((project / ".codex" / "skills" / "my-skill").is_symlink())
        self.assertFalse(self.canonical.exists())
        self.assertIsNone(await self.ledger.get("my-skill"))
        project_entry = await LockLedger(project / "skills-lock.json").get("my-skill")
        self.assertEqual(project_entry.source_type, "native")

    async def test_project_scope_does_not_touch_global_ledger(self) -> None:
        await self.install_native("codex")
        global_entry = await self.ledger.get("my-skill")
        project = self.root / "proj"
        project.mkdir()

        await self.orchestrator.install_from_native(
            InstallNativeRequest(
                name="my-skill",
                tmp_path=str(self.source),
                skill_path="my-skill/SKILL.md",
                agent_apps=("codex",),
                scope=InstallScope.PROJECT,
                project_path=str(project),
            )
        )
        result = await self.orchestrator.delete_skill("my-skill", scope=InstallScope.PROJECT, project_path=project)

        self.assertTrue(result.success, result.stderr)
        self.assertFalse((project / ".agents" / "skills" / "my-skill").exists())
        self.assertIsNone(await self.orchestrator.ledger_for(InstallScope.PROJECT, project).get("my-skill"))
        self.assertTrue((self.canonical / "SKILL.md").is_file())
        self.assertEqual(await self.ledger.get("my-skill"), global_entry)
        skills = await self.scanner.list_skills()
        self.assertEqual(skills[0].source_type, LocalSourceType.NATIVE)


class TestManage(_Workspace):
    async def test_manage_applies_set_difference(self) -> None:
        await self.install_native("codex", "cursor")
        linker = Mock(wraps=SkillLinker())
        self.orchestrator.linker = linker

        result = await self.orchestrator.manage_skill_agent_apps(
            ManageSkillAgentAppsRequest(
                name="my-skill",
                agent_apps=("cursor", "cline"),
                source_type=LocalSourceType.NATIVE,
            )
        )

        self.assertTrue(result.success, result.stderr)
        self.assertEqual(linker.unlink.call_count, 1)
        self.assertEqual(linker.unlink.call_args.args[0], self.agent_entry(".codex"))
        self.assertEqual(linker.link.call_count, 1)
        self.assertEqual(linker.link.call_args.args[1], self.agent_entry(".cline"))

        installed = await self.scanner.get_skill("my-skill")
        self.assertEqual(installed.agent_ids(), {"cursor", "cline"})

    async def test_manage_relinks_only_changed_method(self) -> None:
        await self.install_native("codex", "cursor")
        linker = Mock(wraps=SkillLinker())
        self.orchestrator.linker = linker

        await self.orchestrator.manage_skill_agent_apps(
            ManageSkillAgentAppsRequest(
                name="my-skill",
                agent_apps=("codex", "cursor"),
                method=InstallMethod.COPY,
                source_type=LocalSourceType.NATIVE,
            )
        )

        self.assertEqual(linker.unlink.call_count, 0)
        self.assertEqual(linker.link.call_count, 2)
        installed = await self.scanner.get_skill("my-skill")
        self.assertEqual({a.method for a in installed.installed_agent_apps}, {InstallMethod.COPY})

    async def test_manage_without_changes_is_a_no_op(self) -> None:
        await self.install_native("codex")
        linker = Mock(wraps=SkillLinker())
        self.orchestrator.linker = linker

        result = await self.orchestrator.manage_skill_agent_apps(
            ManageSkillAgentAppsRequest(name="my-skill", agent_apps=("codex",), source_type=LocalSourceType.NATIVE)
        )

        self.assertTrue(result.success)
        linker.link.assert_not_called()
        linker.unlink.assert_not_called()


class TestDelete(_Workspace):
    async def test_delete_removes_everything_and_is_idempotent(self) -> None:
        await self.install_native("codex", "cursor")

        result = await self.orchestrator.delete_skill("my-skill")

        self.assertTrue(result.success, result.stderr)
        self.assertFalse(self.canonical.exists())
        self.assertFalse(self.agent_entry(".codex").is_symlink())
        self.assertFalse(self.agent_entry(".cursor").exists())
        self.assertIsNone(await self.ledger.get("my-skill"))
        self.assertEqual(await self.scanner.list_skills(), [])

        again = await self.orchestrator.delete_skill("my-skill")
        self.assertTrue(again.success)
        self.assertIn("not installed", again.message)

    async def test_delete_keeps_unmanaged_folders(self) -> None:
        await self.install_native("codex")
        stranger = _write_skill(self.home / ".cursor" / "skills" / "other", "other")

        await self.orchestrator.delete_skill("my-skill")

        self.assertTrue((stranger / "SKILL.md").is_file())


class TestUnknownSources(_Workspace):
    async def test_distinct_copies_require_selection(self) -> None:
        _write_skill(self.home / ".codex" / "skills" / "dup", "dup", body="one\n")
        _write_skill(self.home / ".cursor" / "skills" / "dup", "dup", body="two\n")

        check = await self.orchestrator.check_skill_version("dup")

        self.assertTrue(check.requires_selection)
        self.assertEqual(len(check.version_groups), 2)
        self.assertIsNone(check.source_path)

        with self.assertRaises(SkillkitError) as ctx:
            await self.orchestrator.install_from_unknown(InstallUnknownRequest(name="dup", agent_apps=("codex",)))
        self.assertEqual(ctx.exception.code, "VERSION_SELECTION_REQUIRED")

    async def test_identical_copies_are_adopted_as_local(self) -> None:
        _write_skill(self.home / ".codex" / "skills" / "dup", "dup")
        _write_skill(self.home / ".cursor" / "skills" / "dup", "dup")

        check = await self.orchestrator.check_skill_version("dup")
        self.assertFalse(check.requires_selection)
        self.assertEqual(len(check.version_groups[0].paths), 2)

        result = await self.orchestrator.install_from_unknown(
            InstallUnknownRequest(name="dup", agent_apps=("codex", "cursor"))
        )

        self.assertTrue(result.success, result.stderr)
        entry = await self.ledger.get("dup")
        self.assertEqual(entry.source_type, "local")
        skill = await self.scanner.get_skill("dup")
        self.assertEqual(skill.agent_ids(), {"codex", "cursor"})
        self.assertEqual(skill.source_type, LocalSourceType.NATIVE)

    async def test_explicit_candidates_are_grouped_by_hash(self) -> None:
        a = _write_skill(self.root / "a" / "x", "x")
        b = _write_skill(self.root / "b" / "x", "x")
        c = _write_skill(self.root / "c" / "x", "x", body="changed\n")

        check = await self.orchestrator.check_skill_version("x", [a, b, c])

        self.assertTrue(check.requires_selection)
        self.assertEqual(sorted(len(g.paths) for g in check.version_groups), [1, 2])


if __name__ == "__main__":
    unittest.main()
