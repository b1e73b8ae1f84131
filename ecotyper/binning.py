"""
Multi-Threshold Complete-Linkage Binning

This module counts how many complete-linkage clusters ("bins") a set of
sequences falls into at each of a list of sequence-identity thresholds. The
sequence of (threshold, cluster count) pairs is the summary statistic that
the parameter-likelihood oracle fits population parameters against.

Binning Rule:
For a threshold t the allowed within-cluster divergence is gap = 1 - t.
Walking a tree top-down from the starting node:
- the outgroup contributes 0 clusters
- a leaf (or collapsed clade) contributes 1 cluster
- a clade whose diameter (max pairwise leaf distance) exceeds gap - EPSILON
  is split, contributing the sum of its children's counts
- any other clade is homogeneous and contributes exactly 1 cluster

The comparison is strict against gap - EPSILON, so a clade whose diameter
equals the gap up to rounding noise is split. Each threshold is evaluated
independently; subtree diameters are computed once per call and only read
afterwards.

Key Features:
- Tree-based binning (compute_bins), collapse-aware so it can be run on
  subtrees in the middle of a demarcation
- Matrix-based binning (compute_bins_from_distances) over a divergence
  matrix with SciPy complete linkage, for when no tree is available
- Optional caller-side compaction of runs of equal cluster counts
- Text and pandas renditions of bin levels

Example Usage:
    >>> from ecotyper.tree import parse_newick
    >>> from ecotyper.binning import compute_bins
    >>> tree = parse_newick("((A:0.01,B:0.01):0.1,C:0.2,O:0.5);", outgroup="O")
    >>> [level.cluster_count for level in compute_bins(tree, [0.9, 0.99])]
    [2, 3]
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Union
import logging

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.spatial.distance import squareform

from .tree import Node, Tree, subtree_metrics

# Configure logging
logger = logging.getLogger(__name__)

# Tolerance absorbing floating-point noise in the gap comparison
EPSILON = 1e-6

# Threshold ladder used for tree-based binning when none is configured
DEFAULT_THRESHOLDS = (
    0.600, 0.650, 0.700, 0.750, 0.800,
    0.810, 0.820, 0.830, 0.840, 0.850,
    0.860, 0.870, 0.880, 0.890, 0.900,
    0.910, 0.920, 0.930, 0.940, 0.950,
    0.955, 0.960, 0.965, 0.970, 0.975,
    0.980, 0.985, 0.990, 0.995, 1.000,
)


@dataclass(frozen=True)
class BinLevel:
    """
    Number of clusters found at one sequence-identity threshold.

    Attributes
    ----------
    threshold : float
        Sequence-identity fraction in [0, 1] (the "crit" value)
    cluster_count : int
        Number of complete-linkage clusters at this threshold
    """
    threshold: float
    cluster_count: int

    def __post_init__(self):
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be in [0, 1], got {self.threshold}")
        if self.cluster_count < 0:
            raise ValueError(f"cluster_count must be >= 0, got {self.cluster_count}")

    def __str__(self) -> str:
        return f"{self.threshold:5.3f}: {self.cluster_count}"


def _count_clusters(root: Node, gap: float, diameters) -> int:
    """Count clusters below root for one gap, without recursion."""
    count = 0
    stack = [root]
    while stack:
        node = stack.pop()
        if node.is_outgroup():
            continue
        if node.is_leaf():
            count += 1
        # A diameter equal to the gap (within EPSILON) splits the clade
        elif diameters[id(node)][1] > gap - EPSILON:
            stack.extend(node.children)
        else:
            count += 1
    return count


def compute_bins(tree_root: Union[Node, Tree],
                 thresholds: Sequence[float]) -> List[BinLevel]:
    """
    Count complete-linkage clusters below a node at each threshold.

    Parameters
    ----------
    tree_root : Union[Node, Tree]
        Node to start from (a Tree starts from its root). Collapsed nodes
        are treated as leaves.
    thresholds : Sequence[float]
        Sequence-identity thresholds, in the order the results should have

    Returns
    -------
    List[BinLevel]
        One BinLevel per threshold, in the caller's order. An empty
        threshold list gives an empty result.

    Notes
    -----
    Cluster counts never decrease as the threshold increases, because a
    larger threshold means a smaller gap and therefore more splits.
    """
    root = tree_root.root if isinstance(tree_root, Tree) else tree_root
    if len(thresholds) == 0:
        return []

    diameters = subtree_metrics(root)
    levels = [
        BinLevel(float(t), _count_clusters(root, 1.0 - t, diameters))
        for t in thresholds
    ]
    logger.debug(f"Binned clade {root.name or '<unnamed>'}: "
                 f"{', '.join(str(level) for level in levels)}")
    return levels


def compute_bins_from_distances(
    distance_matrix: np.ndarray,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS
) -> List[BinLevel]:
    """
    Count complete-linkage clusters in a divergence matrix.

    Parameters
    ----------
    distance_matrix : np.ndarray
        Square symmetric matrix of pairwise divergences (fraction of
        differing sites) between sequences
    thresholds : Sequence[float], optional
        Sequence-identity thresholds (default: DEFAULT_THRESHOLDS)

    Returns
    -------
    List[BinLevel]
        One BinLevel per threshold. A single sequence always forms one
        cluster; an empty matrix gives zero clusters.

    Raises
    ------
    ValueError
        If the matrix is not square

    Notes
    -----
    Two sequences share a cluster when every member of the merged cluster
    is within gap - EPSILON of every other, the same cut the tree-based
    binning applies to clade diameters.
    """
    matrix = np.asarray(distance_matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise ValueError(f"Distance matrix must be square, got shape {matrix.shape}")

    n = matrix.shape[0]
    if n < 2:
        return [BinLevel(float(t), n) for t in thresholds]

    condensed = squareform(matrix, checks=False)
    linkage_matrix = linkage(condensed, method="complete")

    levels = []
    for t in thresholds:
        cut = (1.0 - t) - EPSILON
        if cut < 0:
            count = n
        else:
            count = int(fcluster(linkage_matrix, t=cut, criterion="distance").max())
        levels.append(BinLevel(float(t), count))
    logger.debug(f"Binned {n} sequences from distance matrix")
    return levels


def compact_bins(levels: Sequence[BinLevel]) -> List[BinLevel]:
    """
    Drop consecutive levels that repeat the previous cluster count.

    The first level of every run of equal counts is kept.
    """
    compacted: List[BinLevel] = []
    for level in levels:
        if compacted and compacted[-1].cluster_count == level.cluster_count:
            continue
        compacted.append(level)
    return compacted


def format_bin_levels(levels: Sequence[BinLevel]) -> str:
    """Render bin levels one per line as 'crit: count'."""
    return "\n".join(str(level) for level in levels)


def bins_to_dataframe(levels: Sequence[BinLevel]) -> pd.DataFrame:
    """
    Tabulate bin levels.

    Returns
    -------
    pd.DataFrame
        Columns 'crit' (threshold) and 'level' (cluster count)
    """
    return pd.DataFrame(
        {
            "crit": [level.threshold for level in levels],
            "level": [level.cluster_count for level in levels],
        },
        columns=["crit", "level"],
    )


def read_bin_levels(bins_file: Union[str, Path]) -> List[BinLevel]:
    """
    Read bin levels written by reports.write_bin_levels.

    Parameters
    ----------
    bins_file : Union[str, Path]
        Tab-separated file with 'crit' and 'level' columns
    """
    df = pd.read_csv(bins_file, sep="\t")
    missing = {"crit", "level"} - set(df.columns)
    if missing:
        raise ValueError(f"Bin file {bins_file} missing columns: {sorted(missing)}")
    return [BinLevel(float(row.crit), int(row.level)) for row in df.itertuples()]
