"""
External Tool Dependency Checking

This module verifies that the external executables a run needs are
resolvable and compatible before any job is dispatched.

Each tool is described by a ToolRequirement. The DependencyChecker resolves
the executable against the process search path, runs a short version query,
parses the first version token from the combined output and compares it with
the requirement's minimum version. The result is one immutable
DependencyStatus per tool plus a single "can proceed" verdict: false only when
a mandatory tool is missing or incompatible.

The module also provides the launcher repair helper for ASTRAL, which ships
as a Java archive rather than a native executable.

Example Usage:
    >>> from myte.dependencies import DependencyChecker, requirements_for_mode
    >>> from myte.config import get_default_config
    >>> checker = DependencyChecker(requirements_for_mode("auto", get_default_config()))
    >>> report = checker.check()
    >>> report.can_proceed
    True
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union
import logging
import os
import re
import shutil
import stat
import subprocess

logger = logging.getLogger(__name__)

DEFAULT_VERSION_FLAGS = ("--version", "-version", "-v", "version")

PROBLEM_MISSING = "missing"
PROBLEM_INCOMPATIBLE = "incompatible"


class DependencyError(Exception):
    """Base class for dependency failures."""

    def __init__(self, status: 'DependencyStatus'):
        super().__init__(status.message or status.name)
        self.status = status


class MissingDependency(DependencyError):
    """Executable could not be resolved on the search path."""


class IncompatibleDependency(DependencyError):
    """Executable resolved but its version is unparseable or too old."""


@dataclass(frozen=True)
class ToolRequirement:
    """
    One external tool a run depends on.

    Attributes
    ----------
    name : str
        Display name ("iqtree", "astral")
    executable : str
        Executable name or path to resolve
    mandatory : bool
        Whether a missing or incompatible tool blocks the run
    min_version : Optional[str]
        Minimum compatible version, or None for any parseable version
    version_flags : Tuple[str, ...]
        Flags tried in order for the version query
    """
    name: str
    executable: str
    mandatory: bool = True
    min_version: Optional[str] = None
    version_flags: Tuple[str, ...] = DEFAULT_VERSION_FLAGS


@dataclass(frozen=True)
class DependencyStatus:
    """Resolved availability and compatibility verdict for one tool."""
    name: str
    executable: str
    path: Optional[Path]
    version: Optional[str]
    compatible: bool
    mandatory: bool
    problem: Optional[str] = None
    message: str = ""

    @property
    def available(self) -> bool:
        return self.path is not None and self.compatible

    @property
    def blocking(self) -> bool:
        return self.mandatory and not self.available


@dataclass(frozen=True)
class DependencyReport:
    """
    Outcome of a dependency check.

    Attributes
    ----------
    statuses : Tuple[DependencyStatus, ...]
        One entry per requirement, in requirement order
    """
    statuses: Tuple[DependencyStatus, ...]

    @property
    def can_proceed(self) -> bool:
        return not any(status.blocking for status in self.statuses)

    def get(self, name: str) -> Optional[DependencyStatus]:
        for status in self.statuses:
            if status.name == name:
                return status
        return None

    def is_available(self, name: str) -> bool:
        status = self.get(name)
        return status is not None and status.available

    @property
    def problems(self) -> List[DependencyStatus]:
        return [status for status in self.statuses if status.problem is not None]

    def raise_for_missing(self) -> None:
        """
        Raise for the first blocking mandatory tool.

        Raises
        ------
        MissingDependency
            If a mandatory tool is not on the search path
        IncompatibleDependency
            If a mandatory tool resolved but failed the version check
        """
        for status in self.statuses:
            if not status.blocking:
                continue
            if status.problem == PROBLEM_MISSING:
                raise MissingDependency(status)
            raise IncompatibleDependency(status)


class DependencyChecker:
    """
    Resolve and version-check a list of external tools.

    Parameters
    ----------
    requirements : Iterable[ToolRequirement]
        Tools to check
    extra_paths : Sequence[Union[str, Path]]
        Directories searched before the process PATH
    timeout : float
        Timeout in seconds for each version query
    """

    def __init__(
        self,
        requirements: Iterable[ToolRequirement],
        extra_paths: Sequence[Union[str, Path]] = (),
        timeout: float = 10.0,
    ):
        self.requirements = list(requirements)
        self.extra_paths = [str(p) for p in extra_paths]
        self.timeout = timeout

    def _search_path(self) -> str:
        parts = list(self.extra_paths)
        env_path = os.environ.get("PATH", "")
        if env_path:
            parts.append(env_path)
        return os.pathsep.join(parts)

    def resolve(self, executable: str) -> Optional[Path]:
        found = shutil.which(executable, path=self._search_path())
        return Path(found).resolve() if found else None

    def query_version(self, path: Path, flags: Sequence[str]) -> Tuple[Optional[str], str]:
        """
        Run the version query and parse the first version token.

        Returns
        -------
        Tuple[Optional[str], str]
            Parsed version (or None) and the last error seen, if any
        """
        last_error = ""
        for flag in flags:
            try:
                result = subprocess.run(
                    [str(path), flag],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    stdin=subprocess.DEVNULL,
                )
            except subprocess.TimeoutExpired:
                last_error = f"version query '{flag}' timed out after {self.timeout}s"
                continue
            except OSError as e:
                last_error = f"version query '{flag}' could not run: {e}"
                continue

            # Some tools print their version on stderr
            output = (result.stdout or "") + (result.stderr or "")
            version = parse_version_string(output)
            if version:
                return version, ""

        return None, last_error or "no version token in tool output"

    def check_one(self, requirement: ToolRequirement) -> DependencyStatus:
        path = self.resolve(requirement.executable)

        if path is None:
            message = f"'{requirement.executable}' not found in PATH"
            return DependencyStatus(
                name=requirement.name,
                executable=requirement.executable,
                path=None,
                version=None,
                compatible=False,
                mandatory=requirement.mandatory,
                problem=PROBLEM_MISSING,
                message=message,
            )

        logger.debug(f"Found {requirement.name} at: {path}")
        version, error = self.query_version(path, requirement.version_flags)

        if version is None:
            return DependencyStatus(
                name=requirement.name,
                executable=requirement.executable,
                path=path,
                version=None,
                compatible=False,
                mandatory=requirement.mandatory,
                problem=PROBLEM_INCOMPATIBLE,
                message=f"could not determine version of {requirement.executable}: {error}",
            )

        if requirement.min_version and compare_versions(version, requirement.min_version) < 0:
            return DependencyStatus(
                name=requirement.name,
                executable=requirement.executable,
                path=path,
                version=version,
                compatible=False,
                mandatory=requirement.mandatory,
                problem=PROBLEM_INCOMPATIBLE,
                message=(
                    f"{requirement.executable} version {version} is older than "
                    f"required version {requirement.min_version}"
                ),
            )

        return DependencyStatus(
            name=requirement.name,
            executable=requirement.executable,
            path=path,
            version=version,
            compatible=True,
            mandatory=requirement.mandatory,
        )

    def check(self) -> DependencyReport:
        """
        Check every requirement.

        Missing and incompatible tools are logged and reported; they never
        raise here. Use ``DependencyReport.raise_for_missing`` to turn a
        blocking verdict into an exception.
        """
        statuses = []
        for requirement in self.requirements:
            status = self.check_one(requirement)
            statuses.append(status)

            if status.available:
                logger.info(f"  ✓ {status.name} {status.version} ({status.path})")
            elif status.mandatory:
                logger.error(f"  ✗ {status.name}: {status.message}")
                logger.info(get_tool_installation_instructions(status.name))
            else:
                logger.warning(f"  ⚠ {status.name} (optional): {status.message}")
                logger.info(get_tool_installation_instructions(status.name))

        return DependencyReport(statuses=tuple(statuses))


def requirements_for_mode(mode: str, config) -> List[ToolRequirement]:
    """
    Tool requirements for a pipeline mode.

    IQ-TREE is mandatory for every mode that runs it. ASTRAL is mandatory in
    ``msc`` mode and optional in ``auto`` mode (when enabled).

    Parameters
    ----------
    mode : str
        Pipeline mode
    config : PipelineConfig
        Run configuration

    Returns
    -------
    List[ToolRequirement]
        Requirements in check order
    """
    iqtree = ToolRequirement(
        name="iqtree",
        executable=config.iqtree.executable,
        mandatory=True,
        min_version=config.iqtree.min_version,
    )
    astral = ToolRequirement(
        name="astral",
        executable=config.astral.executable,
        mandatory=(mode == "msc"),
        min_version=config.astral.min_version,
    )

    if mode in ("gene", "species", "concord"):
        return [iqtree]
    if mode == "msc":
        return [astral]
    if mode == "auto":
        return [iqtree, astral] if config.astral.enabled else [iqtree]
    if mode == "check":
        return [iqtree, replace_mandatory(astral, False)]
    raise ValueError(f"Unknown pipeline mode: {mode}")


def replace_mandatory(requirement: ToolRequirement, mandatory: bool) -> ToolRequirement:
    return ToolRequirement(
        name=requirement.name,
        executable=requirement.executable,
        mandatory=mandatory,
        min_version=requirement.min_version,
        version_flags=requirement.version_flags,
    )


# ============================================================================
# Version Parsing
# ============================================================================

def parse_version_string(text: str) -> Optional[str]:
    """
    Extract version number from tool output.

    Looks for patterns like "version 2.2.0", "v5.7.8", or a bare dotted number.

    Examples
    --------
    >>> parse_version_string("IQ-TREE multicore version 2.2.0 COVID-edition")
    '2.2.0'
    >>> parse_version_string("This is ASTRAL version 5.7.8")
    '5.7.8'
    """
    patterns = [
        r'version\s+v?(\d+\.\d+(?:\.\d+)*)',
        r'\bv(\d+\.\d+(?:\.\d+)*)',
        r'(?<![\w.])(\d+\.\d+(?:\.\d+)*)',
    ]

    for pattern in patterns:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            return match.group(1)

    return None


def compare_versions(version1: str, version2: str) -> int:
    """
    Compare two version strings.

    Returns
    -------
    int
        Negative if version1 < version2, 0 if equal, positive if version1 > version2

    Examples
    --------
    >>> compare_versions("2.2.0", "2.0.0")
    1
    >>> compare_versions("1.6.12", "2.0")
    -1
    """
    def version_tuple(v):
        return tuple(int(x) for x in re.findall(r'\d+', v))

    v1 = version_tuple(version1)
    v2 = version_tuple(version2)

    # Pad so "2.0" and "2.0.0" compare equal
    width = max(len(v1), len(v2))
    v1 = v1 + (0,) * (width - len(v1))
    v2 = v2 + (0,) * (width - len(v2))

    if v1 < v2:
        return -1
    elif v1 > v2:
        return 1
    else:
        return 0


def get_tool_installation_instructions(tool_name: str) -> str:
    """
    Get installation instructions for missing external tools.

    Parameters
    ----------
    tool_name : str
        Name of tool

    Returns
    -------
    str
        Installation instructions
    """
    instructions = {
        "iqtree": """
IQ-TREE 2 Installation:
  Via conda: conda install -c bioconda iqtree
  Via apt:   sudo apt-get install iqtree
  Via brew:  brew install iqtree2
  Website:   http://www.iqtree.org/
""",
        "astral": """
ASTRAL Installation:
  Via conda: conda install -c bioconda astral-tree
  From jar:  download ASTRAL from https://github.com/smirarab/ASTRAL
             then run: myte fix-astral /path/to/astral.5.7.8.jar
             and add the launcher directory to PATH
""",
    }

    return instructions.get(
        tool_name.lower(),
        f"Please install {tool_name} and ensure it is in your system PATH"
    )


# ============================================================================
# Launcher Repair
# ============================================================================

def fix_astral_dependency(
    jar_path: Union[str, Path],
    output_dir: Union[str, Path] = ".",
    name: str = "astral",
) -> Path:
    """
    Write an executable launcher script for the ASTRAL jar.

    The launcher runs ``java -D"java.library.path=<jar dir>/lib" -jar <jar>``
    and forwards all arguments. An existing launcher is overwritten, so
    re-running yields the same file.

    Parameters
    ----------
    jar_path : Union[str, Path]
        Path to the ASTRAL jar file
    output_dir : Union[str, Path]
        Directory the launcher is written to (default: current directory)
    name : str
        Launcher file name (default: "astral")

    Returns
    -------
    Path
        Path to the launcher

    Raises
    ------
    FileNotFoundError
        If the jar does not exist
    """
    jar = Path(jar_path)
    if not jar.is_file():
        raise FileNotFoundError(f"ASTRAL jar not found: {jar}")
    jar = jar.resolve()

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    launcher = out_dir / name

    content = (
        "#!/bin/bash\n"
        f'java -D"java.library.path={jar.parent}/lib" -jar "{jar}" "$@"\n'
    )
    launcher.write_text(content)

    mode = launcher.stat().st_mode
    launcher.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    logger.info(f"ASTRAL launcher written to {launcher}")
    return launcher


def format_dependency_table(report: DependencyReport) -> str:
    """
    Render a dependency report as a plain-text table.

    Examples
    --------
    >>> print(format_dependency_table(report))  # doctest: +SKIP
    Tool     Required   Version   Status      Path
    iqtree   yes        2.2.0     ✓ ok        /usr/bin/iqtree2
    astral   no         -         ⚠ missing   -
    <BLANKLINE>
    Problems:
      astral: 'astral' not found in PATH
    <BLANKLINE>
    Verdict: can proceed
    """
    rows: List[Dict[str, str]] = []
    for status in report.statuses:
        if status.available:
            state = "✓ ok"
        elif status.problem == PROBLEM_MISSING:
            state = "✗ missing" if status.mandatory else "⚠ missing"
        else:
            state = "✗ incompatible" if status.mandatory else "⚠ incompatible"
        rows.append({
            "Tool": status.name,
            "Required": "yes" if status.mandatory else "no",
            "Version": status.version or "-",
            "Status": state,
            "Path": str(status.path) if status.path else "-",
        })

    headers = ["Tool", "Required", "Version", "Status", "Path"]
    widths = {
        h: max([len(h)] + [len(row[h]) for row in rows]) for h in headers
    }

    lines = ["   ".join(h.ljust(widths[h]) for h in headers).rstrip()]
    for row in rows:
        lines.append("   ".join(row[h].ljust(widths[h]) for h in headers).rstrip())

    problems = report.problems
    if problems:
        lines.append("")
        lines.append("Problems:")
        for status in problems:
            lines.append(f"  {status.name}: {status.message}")

    verdict = "can proceed" if report.can_proceed else "cannot proceed"
    lines.append("")
    lines.append(f"Verdict: {verdict}")
    return "\n".join(lines)
