"""
Figures for Binning and Demarcation Results

Figure Types:
1. Bin Level Curve
   - Number of complete-linkage clusters against the sequence-identity
     threshold, as a step line with markers
   - Optional second series (e.g. clade-local bins) for comparison

2. Demarcated Tree
   - The tree drawn with Bio.Phylo
   - Each ecotype's clade and tip labels coloured with its own colour
   - Outgroup drawn in grey

Design Specifications:
- Color palette: colorblind-friendly (seaborn 'colorblind', extended with
  'husl' for many ecotypes)
- Output formats: PNG (300 DPI) or any vector format matplotlib supports
- Tree height scales with the number of tips

Example Usage:
    >>> from ecotyper.visualization import plot_bin_levels, plot_demarcated_tree
    >>> plot_bin_levels(levels, "results/bins.png")
    >>> plot_demarcated_tree(tree, result, "results/demarcated_tree.png")
"""

from typing import Dict, List, Optional, Sequence, Tuple, Union
from pathlib import Path
import logging

import matplotlib.pyplot as plt
import seaborn as sns
from Bio import Phylo

from .binning import BinLevel
from .demarcation import DemarcationResult
from .tree import Tree

# Configure logging
logger = logging.getLogger(__name__)

OUTGROUP_COLOR = "#9A9A9A"


def get_ecotype_colors(n_ecotypes: int) -> List[str]:
    """
    Generate a colorblind-friendly palette with one colour per ecotype.

    Returns
    -------
    List[str]
        Hex colour codes
    """
    if n_ecotypes <= 0:
        return []
    if n_ecotypes <= 10:
        return sns.color_palette("colorblind", n_ecotypes).as_hex()
    return sns.color_palette("husl", n_ecotypes).as_hex()


def _save_figure(out: Path, dpi: int) -> None:
    plt.tight_layout()
    if out.suffix.lower() == ".png":
        plt.savefig(out, dpi=dpi, bbox_inches="tight")
    else:
        plt.savefig(out, bbox_inches="tight")
    plt.close()


def plot_bin_levels(
    levels: Sequence[BinLevel],
    output_path: Union[str, Path],
    comparison: Optional[Sequence[BinLevel]] = None,
    labels: Tuple[str, str] = ("tree", "comparison"),
    figsize: Tuple[float, float] = (7, 4.5),
    dpi: int = 300,
) -> Path:
    """
    Plot cluster count against sequence-identity threshold.

    Parameters
    ----------
    levels : Sequence[BinLevel]
        Bin levels to plot
    output_path : Union[str, Path]
        Path for output figure
    comparison : Sequence[BinLevel], optional
        Second series drawn on the same axes
    labels : Tuple[str, str], optional
        Legend labels for the two series
    figsize : Tuple[float, float], optional
        Figure size in inches
    dpi : int, optional
        Resolution for PNG output

    Returns
    -------
    Path
        Path of the written figure
    """
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    colors = sns.color_palette("colorblind", 2)
    fig, ax = plt.subplots(figsize=figsize)
    series = [(levels, labels[0])]
    if comparison is not None:
        series.append((comparison, labels[1]))

    for (values, label), color in zip(series, colors):
        ax.step(
            [level.threshold for level in values],
            [level.cluster_count for level in values],
            where="post", marker="o", markersize=3, color=color, label=label,
        )

    ax.set_xlabel("Sequence identity threshold")
    ax.set_ylabel("Number of bins")
    ax.set_title("Complete-linkage bins by threshold")
    sns.despine(ax=ax)
    if comparison is not None:
        ax.legend(frameon=False)

    _save_figure(out, dpi)
    logger.info(f"Bin level plot saved: {out}")
    return out


def plot_demarcated_tree(
    tree: Tree,
    result: DemarcationResult,
    output_path: Union[str, Path],
    figsize: Optional[Tuple[float, float]] = None,
    dpi: int = 300,
) -> Path:
    """
    Draw the tree with every ecotype in its own colour.

    Parameters
    ----------
    tree : Tree
        Demarcated tree (collapsed clades are drawn in full)
    result : DemarcationResult
        Demarcation outcome supplying the ecotype membership
    output_path : Union[str, Path]
        Path for output figure
    figsize : Tuple[float, float], optional
        Figure size in inches. If None, height scales with the number of tips
        (0.3 inches per tip, between 6 and 50).
    dpi : int, optional
        Resolution for PNG output

    Returns
    -------
    Path
        Path of the written figure
    """
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    phylo_tree = tree.to_phylo()
    palette = get_ecotype_colors(len(result.ecotypes))
    ecotype_colors = {ecotype.label: color for ecotype, color in zip(result.ecotypes, palette)}
    membership = result.membership()

    label_colors: Dict[str, str] = {}
    for clade in phylo_tree.get_terminals():
        if clade.name == tree.outgroup:
            label_colors[clade.name] = OUTGROUP_COLOR
            clade.color = OUTGROUP_COLOR
        elif clade.name in membership:
            color = ecotype_colors[membership[clade.name]]
            label_colors[clade.name] = color
            clade.color = color

    # Colour whole ecotype clades, not just their tips
    for clade in phylo_tree.get_nonterminals():
        tip_colors = {label_colors.get(tip.name) for tip in clade.get_terminals()}
        if len(tip_colors) == 1 and None not in tip_colors:
            clade.color = tip_colors.pop()

    if figsize is None:
        n_tips = phylo_tree.count_terminals()
        height = max(6, min(50, n_tips * 0.3))
        width = 8 if n_tips <= 30 else min(14, 8 + (n_tips - 30) * 0.1)
        figsize = (width, height)
        logger.debug(f"Auto-scaled tree figure size to {figsize} for {n_tips} tips")

    fig = plt.figure(figsize=figsize)
    ax = fig.add_subplot(1, 1, 1)
    Phylo.draw(phylo_tree, do_show=False, axes=ax, label_colors=label_colors)
    ax.set_title(f"{len(result.ecotypes)} ecotypes")

    _save_figure(out, dpi)
    logger.info(f"Demarcated tree plot saved: {out}")
    return out
