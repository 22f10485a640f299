"""
Tests for external dependency checking.

Tests cover:
- Version string parsing and comparison
- Resolution of present, missing, too-old and unparseable tools
- The "can proceed" verdict for mandatory and optional tools
- Requirements per pipeline mode
- ASTRAL launcher generation and resolution

External tools are simulated with small executable scripts.
"""

import shutil
import stat
import tempfile
import unittest
from pathlib import Path

from myte import dependencies
from myte.config import get_default_config
from myte.dependencies import (
    DependencyChecker,
    IncompatibleDependency,
    MissingDependency,
    ToolRequirement,
)

from fake_tools import make_fake_iqtree, write_executable


class TestVersionParsing(unittest.TestCase):
    """Test parse_version_string and compare_versions."""

    def test_iqtree_banner(self):
        text = "IQ-TREE multicore version 2.2.0 COVID-edition for Linux 64-bit built Jun  1 2022"
        self.assertEqual(dependencies.parse_version_string(text), "2.2.0")

    def test_astral_banner(self):
        self.assertEqual(
            dependencies.parse_version_string("This is ASTRAL version 5.7.8"), "5.7.8"
        )

    def test_v_prefix(self):
        self.assertEqual(dependencies.parse_version_string("tool v1.4"), "1.4")

    def test_no_version(self):
        self.assertIsNone(dependencies.parse_version_string("usage: tool [options]"))

    def test_compare_versions(self):
        self.assertEqual(dependencies.compare_versions("2.2.0", "2.0.0"), 1)
        self.assertEqual(dependencies.compare_versions("1.6.12", "2.0.0"), -1)
        self.assertEqual(dependencies.compare_versions("2.0", "2.0.0"), 0)


class TestDependencyChecker(unittest.TestCase):
    """Test DependencyChecker against fake tools."""

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.bin_dir = self.tmpdir / "bin"
        self.bin_dir.mkdir()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def _checker(self, *requirements):
        return DependencyChecker(requirements, extra_paths=[self.bin_dir], timeout=5)

    def test_available_tool(self):
        make_fake_iqtree(self.bin_dir)

        report = self._checker(ToolRequirement("iqtree", "iqtree2", min_version="2.0.0")).check()
        status = report.get("iqtree")

        self.assertTrue(report.can_proceed)
        self.assertTrue(status.available)
        self.assertEqual(status.version, "2.2.0")
        self.assertEqual(status.path, (self.bin_dir / "iqtree2").resolve())
        self.assertIsNone(status.problem)

    def test_missing_mandatory_tool_blocks(self):
        report = self._checker(ToolRequirement("iqtree", "no-such-iqtree-xyz")).check()
        status = report.get("iqtree")

        self.assertFalse(report.can_proceed)
        self.assertIsNone(status.path)
        self.assertEqual(status.problem, dependencies.PROBLEM_MISSING)
        with self.assertRaises(MissingDependency):
            report.raise_for_missing()

    def test_missing_optional_tool_does_not_block(self):
        make_fake_iqtree(self.bin_dir)
        report = self._checker(
            ToolRequirement("iqtree", "iqtree2"),
            ToolRequirement("astral", "no-such-astral-xyz", mandatory=False),
        ).check()

        self.assertTrue(report.can_proceed)
        self.assertFalse(report.is_available("astral"))
        self.assertEqual(len(report.problems), 1)
        report.raise_for_missing()

    def test_old_version_is_incompatible(self):
        make_fake_iqtree(self.bin_dir, version="1.6.12")

        report = self._checker(ToolRequirement("iqtree", "iqtree2", min_version="2.0.0")).check()
        status = report.get("iqtree")

        self.assertFalse(report.can_proceed)
        self.assertIsNotNone(status.path)
        self.assertEqual(status.version, "1.6.12")
        self.assertEqual(status.problem, dependencies.PROBLEM_INCOMPATIBLE)
        with self.assertRaises(IncompatibleDependency):
            report.raise_for_missing()

    def test_unparseable_version_is_incompatible(self):
        write_executable(self.bin_dir / "mystery", "#!/bin/bash\necho 'usage: mystery [options]'\n")

        report = self._checker(ToolRequirement("mystery", "mystery")).check()
        status = report.get("mystery")

        self.assertFalse(report.can_proceed)
        self.assertIsNone(status.version)
        self.assertEqual(status.problem, dependencies.PROBLEM_INCOMPATIBLE)

    def test_version_on_stderr(self):
        write_executable(self.bin_dir / "loud", "#!/bin/bash\necho 'loud version 3.1.4' >&2\n")

        report = self._checker(ToolRequirement("loud", "loud")).check()

        self.assertEqual(report.get("loud").version, "3.1.4")

    def test_statuses_are_immutable(self):
        report = self._checker(ToolRequirement("iqtree", "no-such-iqtree-xyz")).check()
        with self.assertRaises(Exception):
            report.statuses[0].compatible = True

    def test_format_dependency_table(self):
        make_fake_iqtree(self.bin_dir)
        report = self._checker(
            ToolRequirement("iqtree", "iqtree2"),
            ToolRequirement("astral", "no-such-astral-xyz", mandatory=False),
        ).check()

        table = dependencies.format_dependency_table(report)

        self.assertIn("iqtree", table)
        self.assertIn("2.2.0", table)
        self.assertIn("⚠ missing", table)
        self.assertIn("Verdict: can proceed", table)

    def test_table_lists_problem_messages(self):
        make_fake_iqtree(self.bin_dir)
        report = self._checker(
            ToolRequirement("iqtree", "iqtree2"),
            ToolRequirement("astral", "no-such-astral-xyz", mandatory=False),
        ).check()

        table = dependencies.format_dependency_table(report)

        self.assertIn("Problems:", table)
        self.assertIn("astral: 'no-such-astral-xyz' not found in PATH", table)

    def test_table_without_problems(self):
        make_fake_iqtree(self.bin_dir)
        report = self._checker(ToolRequirement("iqtree", "iqtree2")).check()

        self.assertNotIn("Problems:", dependencies.format_dependency_table(report))


class TestRequirementsForMode(unittest.TestCase):
    """Test requirements_for_mode."""

    def setUp(self):
        self.cfg = get_default_config()

    def test_gene_mode_needs_only_iqtree(self):
        reqs = dependencies.requirements_for_mode("gene", self.cfg)
        self.assertEqual([r.name for r in reqs], ["iqtree"])
        self.assertTrue(reqs[0].mandatory)

    def test_auto_mode_astral_optional(self):
        reqs = {r.name: r for r in dependencies.requirements_for_mode("auto", self.cfg)}
        self.assertTrue(reqs["iqtree"].mandatory)
        self.assertFalse(reqs["astral"].mandatory)

    def test_auto_mode_without_msc(self):
        cfg = self.cfg.update(astral__enabled=False)
        reqs = dependencies.requirements_for_mode("auto", cfg)
        self.assertEqual([r.name for r in reqs], ["iqtree"])

    def test_msc_mode_astral_mandatory(self):
        reqs = dependencies.requirements_for_mode("msc", self.cfg)
        self.assertEqual([r.name for r in reqs], ["astral"])
        self.assertTrue(reqs[0].mandatory)

    def test_unknown_mode(self):
        with self.assertRaises(ValueError):
            dependencies.requirements_for_mode("bogus", self.cfg)


class TestFixAstralDependency(unittest.TestCase):
    """Test the ASTRAL launcher generator."""

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.jar_dir = self.tmpdir / "Astral"
        self.jar_dir.mkdir()
        self.jar = self.jar_dir / "astral.5.7.8.jar"
        self.jar.write_bytes(b"PK\x03\x04")
        self.out_dir = self.tmpdir / "bin"

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_writes_executable_launcher(self):
        launcher = dependencies.fix_astral_dependency(self.jar, self.out_dir)

        self.assertEqual(launcher, self.out_dir / "astral")
        content = launcher.read_text()
        self.assertTrue(content.startswith("#!/bin/bash\n"))
        self.assertIn(f'java -D"java.library.path={self.jar_dir.resolve()}/lib"', content)
        self.assertIn(str(self.jar.resolve()), content)
        self.assertIn('"$@"', content)
        self.assertTrue(launcher.stat().st_mode & stat.S_IXUSR)

    def test_rerun_overwrites_deterministically(self):
        first = dependencies.fix_astral_dependency(self.jar, self.out_dir).read_text()
        second = dependencies.fix_astral_dependency(self.jar, self.out_dir).read_text()
        self.assertEqual(first, second)

    def test_missing_jar(self):
        with self.assertRaises(FileNotFoundError):
            dependencies.fix_astral_dependency(self.tmpdir / "missing.jar", self.out_dir)

    def test_launcher_is_resolvable(self):
        launcher = dependencies.fix_astral_dependency(self.jar, self.out_dir)
        checker = DependencyChecker([], extra_paths=[self.out_dir])

        self.assertEqual(checker.resolve("astral"), launcher.resolve())

    def test_launcher_not_resolvable_without_path(self):
        dependencies.fix_astral_dependency(self.jar, self.out_dir)
        checker = DependencyChecker([])
        found = checker.resolve("astral")
        if found is not None:
            # An ASTRAL install elsewhere on PATH
            self.assertNotEqual(found, (self.out_dir / "astral").resolve())


if __name__ == "__main__":
    unittest.main()
