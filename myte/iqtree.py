"""
IQ-TREE and ASTRAL Job Builders

This module turns a directory of alignments plus the configured command
templates into immutable JobDescriptor records. Stage-specific behaviour lives
here, in how the commands are built; every job is executed by the same worker
routine in ``myte.scheduler``.

Command templates:
- Gene trees: ``iqtree2 -s <alignment> --prefix <stem> [-T 1] [opts | -B 1000]``
- Species tree: ``iqtree2 -s <alignment dir> --prefix concat [-T AUTO] [opts | -B 1000]``
- Concordance factors: ``iqtree2 -t <species tree> --gcf <gene trees>
  -p <alignment dir> --scf 100 -T <cores> --prefix concord``
- MSC: ``astral -i <gene trees> -o msc_astral.tree`` (stderr kept as
  ``msc_astral.log``)

Thread flags are only added when the user supplies no options string of
their own; a user options string replaces the default bootstrap as well.

All paths placed in commands are absolute because each job runs inside its
own working directory.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
import glob
import logging
import shlex

from .jobs import JobDescriptor
from .utils import sanitize_filename

logger = logging.getLogger(__name__)

GENE_STAGE = "gene-trees"
SPECIES_STAGE = "species-tree"
CONCORDANCE_STAGE = "concordance"
MSC_STAGE = "msc"

GENE_TREES_FILE = "genes.treefiles"
SPECIES_PREFIX = "concat"
CONCORDANCE_PREFIX = "concord"
MSC_TREE = "msc_astral.tree"
MSC_LOG = "msc_astral.log"

ALIGNMENT_PATTERNS: Dict[str, str] = {
    "fasta": "*.fa*",
    "nexus": "*.nex*",
    "phylip": "*.phy*",
}


def discover_alignments(directory: Union[str, Path], input_format: str) -> List[Path]:
    """
    Find alignment files in a directory.

    Parameters
    ----------
    directory : Union[str, Path]
        Directory holding the alignments (not searched recursively)
    input_format : str
        "fasta", "nexus" or "phylip"

    Returns
    -------
    List[Path]
        Sorted absolute paths of matching files

    Raises
    ------
    FileNotFoundError
        If the directory does not exist
    ValueError
        If the format is unknown
    """
    path = Path(directory)
    if not path.is_dir():
        raise FileNotFoundError(f"Alignment directory not found: {path}")

    fmt = input_format.lower()
    if fmt not in ALIGNMENT_PATTERNS:
        raise ValueError(
            f"Unknown input format: {input_format} "
            f"(expected one of {', '.join(ALIGNMENT_PATTERNS)})"
        )

    alignments = sorted(
        p.resolve() for p in path.glob(ALIGNMENT_PATTERNS[fmt]) if p.is_file()
    )
    logger.info(f"Found {len(alignments)} {fmt} alignments in {path}")
    return alignments


def split_user_params(params: Optional[str]) -> List[str]:
    """
    Split a user options string into arguments using shell quoting rules.

    Examples
    --------
    >>> split_user_params("-m 'GTR+G' -B 1000")
    ['-m', 'GTR+G', '-B', '1000']
    >>> split_user_params(None)
    []
    """
    if not params:
        return []
    return shlex.split(params)


def _tail_arguments(params: Optional[str], threads: str, bootstrap: int) -> List[str]:
    user_args = split_user_params(params)
    if user_args:
        return user_args

    args = ["-T", str(threads)]
    if bootstrap:
        args += ["-B", str(bootstrap)]
    return args


def build_gene_tree_jobs(
    alignments: Sequence[Union[str, Path]],
    iqtree_config,
    work_root: Union[str, Path],
) -> List[JobDescriptor]:
    """
    One IQ-TREE job per alignment.

    The job id is the alignment's file name. Each job gets its own working
    directory under ``<work_root>/gene-trees``; when two names sanitise to the
    same directory name, later ones get a numeric suffix so no directory is
    shared.

    Parameters
    ----------
    alignments : Sequence[Union[str, Path]]
        Alignment files, in dispatch order
    iqtree_config : IqtreeConfig
        IQ-TREE settings
    work_root : Union[str, Path]
        Root of the per-job working directories

    Returns
    -------
    List[JobDescriptor]
        Jobs in the same order as ``alignments``

    Raises
    ------
    ValueError
        If two alignments share a file name
    """
    stage_root = Path(work_root).resolve() / GENE_STAGE
    tail = _tail_arguments(
        iqtree_config.params, iqtree_config.gene_threads, iqtree_config.bootstrap
    )

    jobs = []
    seen_ids = set()
    used_dirs = set()

    for aln in alignments:
        aln = Path(aln).resolve()
        job_id = aln.name
        if job_id in seen_ids:
            raise ValueError(f"Duplicate alignment name: {job_id}")
        seen_ids.add(job_id)

        dir_name = sanitize_filename(job_id)
        candidate = dir_name
        counter = 2
        while candidate in used_dirs:
            candidate = f"{dir_name}_{counter}"
            counter += 1
        used_dirs.add(candidate)

        prefix = aln.stem
        command = [
            iqtree_config.executable,
            "-s", str(aln),
            "--prefix", prefix,
        ] + tail

        jobs.append(JobDescriptor(
            job_id=job_id,
            stage=GENE_STAGE,
            input_path=aln,
            working_dir=stage_root / candidate,
            command=tuple(command),
            prefix=prefix,
            output_patterns=(f"{glob.escape(prefix)}.*",),
        ))

    logger.debug(f"Built {len(jobs)} gene tree jobs")
    return jobs


def build_species_tree_job(
    alignment_dir: Union[str, Path],
    iqtree_config,
    work_root: Union[str, Path],
) -> JobDescriptor:
    """Single IQ-TREE job estimating the species tree from the concatenated alignments."""
    aln_dir = Path(alignment_dir).resolve()
    tail = _tail_arguments(
        iqtree_config.params, iqtree_config.species_threads, iqtree_config.bootstrap
    )

    command = [
        iqtree_config.executable,
        "-s", str(aln_dir),
        "--prefix", SPECIES_PREFIX,
    ] + tail

    return JobDescriptor(
        job_id=SPECIES_PREFIX,
        stage=SPECIES_STAGE,
        input_path=aln_dir,
        working_dir=Path(work_root).resolve() / SPECIES_STAGE,
        command=tuple(command),
        prefix=SPECIES_PREFIX,
        output_patterns=(f"{SPECIES_PREFIX}.*",),
    )


def build_concordance_job(
    alignment_dir: Union[str, Path],
    species_tree: Union[str, Path],
    gene_trees: Union[str, Path],
    threads: int,
    iqtree_config,
    work_root: Union[str, Path],
) -> JobDescriptor:
    """
    Single IQ-TREE job computing gene and site concordance factors.

    Parameters
    ----------
    alignment_dir : Union[str, Path]
        Alignment directory (for site concordance factors)
    species_tree : Union[str, Path]
        Species tree (``concat.treefile``)
    gene_trees : Union[str, Path]
        Combined gene-tree file (``genes.treefiles``)
    threads : int
        Thread count passed to ``-T``; the job runs alone in its stage
    iqtree_config : IqtreeConfig
        IQ-TREE settings
    work_root : Union[str, Path]
        Root of the per-job working directories
    """
    aln_dir = Path(alignment_dir).resolve()
    command = [
        iqtree_config.executable,
        "-t", str(Path(species_tree).resolve()),
        "--gcf", str(Path(gene_trees).resolve()),
        "-p", str(aln_dir),
        "--scf", str(iqtree_config.scf_quartets),
        "-T", str(max(1, int(threads))),
        "--prefix", CONCORDANCE_PREFIX,
    ]

    return JobDescriptor(
        job_id=CONCORDANCE_PREFIX,
        stage=CONCORDANCE_STAGE,
        input_path=aln_dir,
        working_dir=Path(work_root).resolve() / CONCORDANCE_STAGE,
        command=tuple(command),
        prefix=CONCORDANCE_PREFIX,
        output_patterns=(f"{CONCORDANCE_PREFIX}.*",),
    )


def build_msc_job(
    gene_trees: Union[str, Path],
    astral_config,
    work_root: Union[str, Path],
) -> JobDescriptor:
    """Single ASTRAL job estimating the multi-species coalescent tree."""
    trees = Path(gene_trees).resolve()
    command = [
        astral_config.executable,
        "-i", str(trees),
        "-o", MSC_TREE,
    ]

    return JobDescriptor(
        job_id="astral",
        stage=MSC_STAGE,
        input_path=trees,
        working_dir=Path(work_root).resolve() / MSC_STAGE,
        command=tuple(command),
        prefix="msc_astral",
        output_patterns=(MSC_TREE, MSC_LOG),
        stderr_name=MSC_LOG,
    )
