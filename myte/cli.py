#!/usr/bin/env python3
"""
myte Command-Line Interface

Batch gene tree, species tree, concordance factor and multi-species
coalescent estimation with IQ-TREE 2 and ASTRAL.
"""

import argparse
import signal
import sys
import threading
import time
import logging
from pathlib import Path
from typing import Optional

# Local imports
from . import __version__, config, dependencies, utils
from .pipeline import EXIT_CANCELLED, EXIT_FAILED, EXIT_OK, Pipeline, PipelineState
from .reports import format_stage_summary

logger = logging.getLogger(__name__)

RUN_COMMANDS = ("gene", "species", "concord", "msc", "auto")


def _raise_keyboard_interrupt(signum, frame):
    raise KeyboardInterrupt


def install_signal_handlers() -> None:
    """Treat SIGTERM like Ctrl-C so running jobs are stopped before exit."""
    # signal.signal only works in the main thread
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)


def format_execution_time(seconds: float) -> str:
    """
    Execution time as shown at the end of a run.

    Examples
    --------
    >>> format_execution_time(42.5)
    '42.50 seconds'
    >>> format_execution_time(3725)
    '01:02:05'
    """
    if seconds < 60:
        return f"{seconds:.2f} seconds"
    return utils.format_duration(seconds)


def _add_run_arguments(parser: argparse.ArgumentParser, mode: str) -> None:
    if mode in ("gene", "species", "concord", "auto"):
        parser.add_argument(
            '-d', '--dir',
            type=Path,
            required=True,
            help='Folder with the locus alignments'
        )
        parser.add_argument(
            '-f', '--input-fmt',
            choices=list(config.INPUT_FORMATS),
            default=None,
            help='Alignment format (default: nexus)'
        )

    if mode in ("concord", "msc"):
        parser.add_argument(
            '-g', '--gene-trees',
            type=Path,
            required=True,
            help='File with all gene trees, one per line (e.g. genes.treefiles)'
        )

    if mode == "concord":
        parser.add_argument(
            '-t', '--species-tree',
            type=Path,
            required=True,
            help='Species tree (e.g. concat.treefile)'
        )

    if mode in ("gene", "species", "auto"):
        parser.add_argument(
            '--opts',
            type=str,
            default=None,
            help='Options passed to IQ-TREE, quoted (e.g. --opts="-m MFP -B 1000"). '
                 'Replaces the default "-T <threads> -B 1000"'
        )

    if mode == "auto":
        parser.add_argument(
            '--no-msc',
            action='store_true',
            help='Skip the ASTRAL multi-species coalescent stage'
        )

    parser.add_argument(
        '-o', '--output',
        type=Path,
        default=None,
        help='Output directory (default: myte-output)'
    )

    parser.add_argument(
        '--workers',
        type=int,
        default=None,
        help='Maximum concurrent jobs (default: number of physical cores)'
    )

    parser.add_argument(
        '--min-successes',
        type=int,
        default=None,
        help='Successful jobs a stage needs before later stages run (default: 1)'
    )

    parser.add_argument(
        '--keep-workdirs',
        action='store_true',
        help='Keep per-job working directories of succeeded jobs'
    )

    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Do not draw the live status line'
    )

    _add_common_arguments(parser)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '-c', '--config',
        type=Path,
        default=None,
        help='YAML or JSON configuration file'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Logging verbosity (default: INFO)'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='myte',
        description='myte: automatic genomic tree building with IQ-TREE 2 and ASTRAL',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check that IQ-TREE and ASTRAL are installed
  myte check

  # Gene trees for every nexus alignment in a folder
  myte gene -d alignments/

  # Full run: gene trees, species tree, concordance factors, ASTRAL
  myte auto -d alignments/ -o results/

  # Custom IQ-TREE options
  myte gene -d alignments/ --opts="-m MFP -B 1000 -T 2"

  # Make the ASTRAL jar usable as an executable
  myte fix-astral ~/tools/Astral/astral.5.7.8.jar -o ~/bin
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'myte {__version__}'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    check = subparsers.add_parser('check', help='Check dependencies')
    _add_common_arguments(check)

    helps = {
        "gene": "Batch gene tree estimation using IQ-TREE",
        "species": "Species tree estimation from the concatenated alignments",
        "concord": "Gene and site concordance factors",
        "msc": "Multi-species coalescent tree using ASTRAL",
        "auto": "Gene trees, species tree, concordance factors and ASTRAL in one run",
    }
    for mode in RUN_COMMANDS:
        sub = subparsers.add_parser(mode, help=helps[mode])
        _add_run_arguments(sub, mode)

    fix = subparsers.add_parser('fix-astral', help='Write an executable launcher for the ASTRAL jar')
    fix.add_argument('jar', type=Path, help='Path to the ASTRAL jar file')
    fix.add_argument(
        '-o', '--output-dir',
        type=Path,
        default=Path('.'),
        help='Directory for the launcher (default: current directory)'
    )
    fix.add_argument('--name', default='astral', help='Launcher name (default: astral)')
    fix.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], default='INFO')

    init = subparsers.add_parser('init-config', help='Write a configuration template')
    init.add_argument('path', type=Path, help='Output file (.yaml or .json)')
    init.add_argument('--format', choices=['yaml', 'json'], default=None,
                      help='File format (default: from the file suffix)')
    init.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], default='INFO')

    return parser


def load_run_config(args: argparse.Namespace) -> config.PipelineConfig:
    """
    Resolve the effective configuration.

    Precedence, lowest first: defaults, config file, MYTE_* environment
    variables, command-line options.
    """
    if getattr(args, 'config', None):
        cfg = config.load_config_from_file(args.config)
    else:
        cfg = config.get_default_config()

    env_overrides = config.load_config_from_env()
    if env_overrides:
        cfg = cfg.update(**env_overrides)

    overrides = {}
    if getattr(args, 'output', None):
        overrides['output_dir'] = args.output
    if getattr(args, 'log_level', None):
        overrides['log_level'] = args.log_level
    if getattr(args, 'workers', None):
        overrides['scheduler__max_workers'] = args.workers
    if getattr(args, 'min_successes', None):
        overrides['scheduler__min_successes'] = args.min_successes
    if getattr(args, 'opts', None):
        overrides['iqtree__params'] = args.opts
    if getattr(args, 'input_fmt', None):
        overrides['input__input_format'] = args.input_fmt
    if getattr(args, 'keep_workdirs', False):
        overrides['keep_workdirs'] = True
    if getattr(args, 'no_progress', False):
        overrides['show_progress'] = False
    if getattr(args, 'no_msc', False):
        overrides['astral__enabled'] = False

    return cfg.update(**overrides) if overrides else cfg


def run_check(args: argparse.Namespace) -> int:
    try:
        cfg = load_run_config(args)
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    utils.setup_logging(log_level=cfg.log_level)

    extra_paths = [cfg.astral.launcher_dir] if cfg.astral.launcher_dir else []
    checker = dependencies.DependencyChecker(
        dependencies.requirements_for_mode("check", cfg),
        extra_paths=extra_paths,
        timeout=cfg.scheduler.version_timeout,
    )
    report = checker.check()

    print()
    print(dependencies.format_dependency_table(report))
    return EXIT_OK if report.can_proceed else EXIT_FAILED


def run_fix_astral(args: argparse.Namespace) -> int:
    utils.setup_logging(log_level=args.log_level)
    try:
        launcher = dependencies.fix_astral_dependency(args.jar, args.output_dir, args.name)
    except FileNotFoundError as e:
        logger.error(str(e))
        return EXIT_FAILED

    print(f"✓ ASTRAL launcher written to {launcher}")
    print(f"  Add {launcher.parent.resolve()} to PATH, or set astral.launcher_dir in your config")
    return EXIT_OK


def run_init_config(args: argparse.Namespace) -> int:
    utils.setup_logging(log_level=args.log_level)
    fmt = args.format
    if fmt is None:
        fmt = "json" if args.path.suffix.lower() == ".json" else "yaml"

    config.create_config_template(args.path, format=fmt)
    print(f"✓ Configuration template written to {args.path}")
    return EXIT_OK


def run_mode(args: argparse.Namespace) -> int:
    """Run one pipeline mode and return its exit code."""
    mode = args.command
    try:
        cfg = load_run_config(args)
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    output_dir = Path(cfg.output_dir).resolve()
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / "myte.log"
    utils.setup_logging(log_level=cfg.log_level, log_file=log_file)

    for warning in config.validate_config(cfg):
        logger.warning(f"⚠ {warning}")

    print("=" * 80)
    print(f"myte v{__version__}: {mode}")
    print("=" * 80)
    if getattr(args, 'dir', None):
        print(f"Alignments: {args.dir} ({cfg.input.input_format})")
    if getattr(args, 'gene_trees', None):
        print(f"Gene trees: {args.gene_trees}")
    if getattr(args, 'species_tree', None):
        print(f"Species tree: {args.species_tree}")
    print(f"Output: {output_dir}")
    print()
    print("Parameters:")
    print(f"  Workers: {cfg.scheduler.max_workers or utils.physical_core_count()} (physical cores: {utils.physical_core_count()})")
    print(f"  IQ-TREE options: {cfg.iqtree.params or 'default'}")
    print(f"  Minimum successes per stage: {cfg.scheduler.min_successes}")
    print("=" * 80)
    print()

    start = time.monotonic()
    try:
        pipeline = Pipeline(
            cfg,
            mode,
            input_dir=getattr(args, 'dir', None),
            gene_trees=getattr(args, 'gene_trees', None),
            species_tree=getattr(args, 'species_tree', None),
        )
        result = pipeline.run()
    except (ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("\n\nPipeline interrupted by user", file=sys.stderr)
        return EXIT_CANCELLED

    print()
    print("=" * 80)
    print("Summary")
    print("=" * 80)
    for stage_result in result.stages:
        print(f"  {format_stage_summary(stage_result)}")

    if result.state is PipelineState.COMPLETED:
        print("\n✓ COMPLETED")
    elif result.state is PipelineState.CANCELLED:
        print("\n⊘ CANCELLED")
    else:
        print(f"\n✗ FAILED: {result.error}")
    print(f"Event log: {output_dir / cfg.event_log.name}")
    print(f"Run log: {log_file}")
    print(f"Execution time: {format_execution_time(time.monotonic() - start)}")

    return result.exit_code


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    install_signal_handlers()

    try:
        if args.command == 'check':
            return run_check(args)
        if args.command == 'fix-astral':
            return run_fix_astral(args)
        if args.command == 'init-config':
            return run_init_config(args)
        return run_mode(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == '__main__':
    sys.exit(main())
