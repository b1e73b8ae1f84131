"""
Ecotyper: Ecotype Demarcation from Bacterial Phylogenies

Ecotyper estimates how many ecotypes (ecologically distinct populations)
exist among a set of aligned bacterial sequences and which sequences belong
to each, following the Ecotype Simulation approach.

Core functionality includes:
- Rooted phylogenetic trees with patristic distance queries and Newick I/O
- Multi-threshold complete-linkage binning of a tree or divergence matrix
- Recursive top-down demarcation driven by an external likelihood solver
- Tables, figures and an HTML report of the demarcation
"""

__version__ = "0.1.0"

# Import main modules for easy access
from . import tree
from . import binning
from . import oracle
from . import demarcation
from . import core
from . import utils

__all__ = [
    "tree",
    "binning",
    "oracle",
    "demarcation",
    "core",
    "utils",
]
