"""
Tests for the command-line interface.

Tests cover:
- Argument parsing per subcommand
- Configuration precedence
- The fix-astral and init-config commands
- Exit codes of pipeline runs
"""

import io
import logging
import shutil
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

import yaml

from myte import cli
from myte.pipeline import EXIT_FAILED, EXIT_OK

from fake_tools import make_alignments, make_fake_iqtree


class CliTestCase(unittest.TestCase):
    """Run main() quietly inside a temporary directory."""

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        patcher = patch("myte.cli.install_signal_handlers")
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        package_logger = logging.getLogger("myte")
        for handler in list(package_logger.handlers):
            package_logger.removeHandler(handler)
            handler.close()
        shutil.rmtree(self.tmpdir)

    def run_main(self, argv):
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = cli.main(argv)
        return code, stdout.getvalue()


class TestParser(unittest.TestCase):
    """Test build_parser."""

    def setUp(self):
        self.parser = cli.build_parser()

    def test_gene_arguments(self):
        args = self.parser.parse_args(
            ["gene", "-d", "aln", "-f", "fasta", "--opts=-m MFP -B 1000", "--workers", "4"]
        )
        self.assertEqual(args.command, "gene")
        self.assertEqual(args.dir, Path("aln"))
        self.assertEqual(args.input_fmt, "fasta")
        self.assertEqual(args.opts, "-m MFP -B 1000")
        self.assertEqual(args.workers, 4)

    def test_concord_requires_trees(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["concord", "-d", "aln"])

    def test_msc_arguments(self):
        args = self.parser.parse_args(["msc", "-g", "genes.treefiles"])
        self.assertEqual(args.gene_trees, Path("genes.treefiles"))
        self.assertFalse(hasattr(args, "dir"))

    def test_auto_no_msc(self):
        args = self.parser.parse_args(["auto", "-d", "aln", "--no-msc"])
        self.assertTrue(args.no_msc)

    def test_command_required(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                self.parser.parse_args([])


class TestLoadRunConfig(unittest.TestCase):
    """Test configuration precedence."""

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.config_path = self.tmpdir / "myte.yaml"
        self.config_path.write_text(yaml.safe_dump({
            "scheduler": {"max_workers": 3, "min_successes": 2},
            "log_level": "WARNING",
        }))

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_cli_overrides_file(self):
        args = cli.build_parser().parse_args(
            ["gene", "-d", "aln", "-c", str(self.config_path), "--workers", "8"]
        )
        with patch.dict("os.environ", {}, clear=True):
            cfg = cli.load_run_config(args)

        self.assertEqual(cfg.scheduler.max_workers, 8)
        self.assertEqual(cfg.scheduler.min_successes, 2)
        self.assertEqual(cfg.log_level, "WARNING")

    def test_environment_overrides_file(self):
        args = cli.build_parser().parse_args(["gene", "-d", "aln", "-c", str(self.config_path)])
        with patch.dict("os.environ", {"MYTE_SCHEDULER__MAX_WORKERS": "5"}, clear=True):
            cfg = cli.load_run_config(args)

        self.assertEqual(cfg.scheduler.max_workers, 5)

    def test_flags(self):
        args = cli.build_parser().parse_args(
            ["auto", "-d", "aln", "--no-msc", "--keep-workdirs", "--no-progress", "-f", "phylip"]
        )
        with patch.dict("os.environ", {}, clear=True):
            cfg = cli.load_run_config(args)

        self.assertFalse(cfg.astral.enabled)
        self.assertTrue(cfg.keep_workdirs)
        self.assertFalse(cfg.show_progress)
        self.assertEqual(cfg.input.input_format, "phylip")


class TestFormatExecutionTime(unittest.TestCase):
    """Test format_execution_time."""

    def test_seconds(self):
        self.assertEqual(cli.format_execution_time(42.5), "42.50 seconds")

    def test_hours(self):
        self.assertEqual(cli.format_execution_time(3725), "01:02:05")


class TestUtilityCommands(CliTestCase):
    """Test fix-astral and init-config."""

    def test_fix_astral(self):
        jar = self.tmpdir / "Astral" / "astral.5.7.8.jar"
        jar.parent.mkdir()
        jar.write_bytes(b"PK")
        out_dir = self.tmpdir / "bin"

        code, output = self.run_main(["fix-astral", str(jar), "-o", str(out_dir)])

        self.assertEqual(code, EXIT_OK)
        self.assertTrue((out_dir / "astral").exists())
        self.assertIn("launcher written", output)

    def test_fix_astral_missing_jar(self):
        code, _ = self.run_main(["fix-astral", str(self.tmpdir / "missing.jar"), "-o", str(self.tmpdir)])
        self.assertEqual(code, EXIT_FAILED)

    def test_init_config(self):
        path = self.tmpdir / "template.yaml"

        code, _ = self.run_main(["init-config", str(path)])

        self.assertEqual(code, EXIT_OK)
        self.assertIn("iqtree", yaml.safe_load(path.read_text()))


class TestRunCommands(CliTestCase):
    """Test pipeline subcommands end to end with a fake IQ-TREE."""

    def setUp(self):
        super().setUp()
        self.iqtree = make_fake_iqtree(self.tmpdir / "bin")
        self.aln_dir = self.tmpdir / "alignments"
        self.output = self.tmpdir / "output"
        self.config_path = self.tmpdir / "myte.yaml"
        self.config_path.write_text(yaml.safe_dump({
            "iqtree": {"executable": str(self.iqtree)},
            "show_progress": False,
        }))

    def test_gene_run(self):
        make_alignments(self.aln_dir, ["A", "B"])

        code, output = self.run_main([
            "gene", "-d", str(self.aln_dir), "-o", str(self.output),
            "-c", str(self.config_path), "--workers", "2",
        ])

        self.assertEqual(code, EXIT_OK)
        self.assertIn("COMPLETED", output)
        self.assertTrue((self.output / "genes.treefiles").exists())
        self.assertTrue((self.output / "myte.log").exists())

    def test_missing_directory(self):
        code, _ = self.run_main([
            "gene", "-d", str(self.tmpdir / "missing"), "-o", str(self.output),
            "-c", str(self.config_path),
        ])
        self.assertEqual(code, EXIT_FAILED)

    def test_failed_run(self):
        make_alignments(self.aln_dir, ["A"], content={"A": "FAIL"})

        code, output = self.run_main([
            "gene", "-d", str(self.aln_dir), "-o", str(self.output),
            "-c", str(self.config_path),
        ])

        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("FAILED", output)

    def test_check_ignores_unrelated_environment(self):
        with patch.dict("os.environ", {"MYTE_HOME": "/opt/myte"}):
            code, output = self.run_main(["check", "-c", str(self.config_path)])

        self.assertEqual(code, EXIT_OK)
        self.assertIn("Verdict: can proceed", output)

    def test_invalid_config_file_reported(self):
        bad = self.tmpdir / "bad.yaml"
        bad.write_text(yaml.safe_dump({"scheduler": {"workers": 4}}))

        for argv in (["check", "-c", str(bad)],
                     ["gene", "-d", str(self.tmpdir), "-o", str(self.output), "-c", str(bad)]):
            code, _ = self.run_main(argv)
            self.assertEqual(code, EXIT_FAILED)

    def test_check_with_missing_tool(self):
        missing = self.tmpdir / "missing.yaml"
        missing.write_text(yaml.safe_dump({"iqtree": {"executable": str(self.tmpdir / "nope")}}))

        code, output = self.run_main(["check", "-c", str(missing)])

        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("iqtree", output)


if __name__ == "__main__":
    unittest.main()
