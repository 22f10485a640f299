"""
myte: Automatic Genomic Tree Building

myte drives IQ-TREE 2 and ASTRAL across a folder of locus alignments, running
one external process per alignment on as many workers as the machine has
physical cores, and organizes the results into a fixed output layout.

Core functionality includes:
- Dependency checking and an ASTRAL launcher generator
- Batch gene tree estimation, one IQ-TREE job per alignment
- Species tree estimation from the concatenated alignments
- Gene and site concordance factors
- Optional multi-species coalescent tree with ASTRAL
- A persistent event log and tabular run summaries
"""

__version__ = "0.1.0"
__author__ = "Heru Handika"

# Import main modules for easy access
from . import config
from . import dependencies
from . import iqtree
from . import jobs
from . import organizer
from . import pipeline
from . import reporter
from . import reports
from . import scheduler
from . import utils

__all__ = [
    "config",
    "dependencies",
    "iqtree",
    "jobs",
    "organizer",
    "pipeline",
    "reporter",
    "reports",
    "scheduler",
    "utils",
]
