"""
Unit tests for multi-threshold binning.

Tests cover:
- Cluster counts on reference trees, with and without an outgroup
- Boundary behaviour of the gap comparison
- Monotonicity over random trees
- Collapse-aware binning of subtrees
- Matrix-based binning with complete linkage
- Compaction and tabular output
"""

import unittest
import random

import numpy as np

from ecotyper.binning import (
    BinLevel,
    DEFAULT_THRESHOLDS,
    bins_to_dataframe,
    compact_bins,
    compute_bins,
    compute_bins_from_distances,
    format_bin_levels,
)
from ecotyper.tree import Node, Tree, parse_newick

LEGACY_TREE = "(((A:0.1,B:0.2):0.1,(C:0.1,D:0.1):0.2):0.3,E:0.5):0.0;"
SCENARIO_TREE = "(((A:0.01,B:0.01):0.10,(C:0.02,D:0.04):0.10):0.05,O:0.5);"


def random_tree(rng, n_leaves, with_outgroup=True):
    """Build a random rooted tree with short branches and a distant outgroup."""
    nodes = [Node(f"S{i}", rng.uniform(0.0, 0.05)) for i in range(n_leaves)]
    while len(nodes) > 1:
        k = min(len(nodes), rng.choice([2, 2, 3]))
        picked = [nodes.pop(rng.randrange(len(nodes))) for _ in range(k)]
        nodes.append(Node("", rng.uniform(0.0, 0.05), picked))
    ingroup = nodes[0]
    if not with_outgroup:
        return Tree(ingroup)
    ingroup.branch_length = 0.01
    return Tree(Node("", 0.0, [Node("OUT", 0.5), ingroup]), outgroup="OUT")


def counts(levels):
    return [level.cluster_count for level in levels]


class TestComputeBins(unittest.TestCase):
    """Test tree-based binning."""

    def test_default_ladder(self):
        """Test the shape of the default threshold ladder."""
        self.assertEqual(len(DEFAULT_THRESHOLDS), 30)
        self.assertEqual(DEFAULT_THRESHOLDS[0], 0.6)
        self.assertEqual(DEFAULT_THRESHOLDS[-1], 1.0)
        self.assertEqual(list(DEFAULT_THRESHOLDS), sorted(DEFAULT_THRESHOLDS))

    def test_legacy_tree_without_outgroup(self):
        """Test counts on the reference tree with every leaf counted."""
        tree = parse_newick(LEGACY_TREE)
        expected = [3, 3, 4, 4] + [5] * 26
        self.assertEqual(counts(compute_bins(tree, DEFAULT_THRESHOLDS)), expected)

    def test_legacy_tree_with_outgroup(self):
        """Test that the outgroup contributes no cluster."""
        tree = parse_newick(LEGACY_TREE, outgroup="E")
        expected = [2, 2, 3, 3] + [4] * 26
        self.assertEqual(counts(compute_bins(tree, DEFAULT_THRESHOLDS)), expected)

    def test_scenario_tree(self):
        """Test a tree of two tight cherries and a distant outgroup."""
        tree = parse_newick(SCENARIO_TREE, outgroup="O")
        levels = compute_bins(tree, [0.70, 0.97])
        self.assertEqual(counts(levels), [1, 3])
        self.assertEqual([level.threshold for level in levels], [0.70, 0.97])

    def test_thresholds_kept_in_caller_order(self):
        """Test that results follow the given threshold order."""
        tree = parse_newick(SCENARIO_TREE, outgroup="O")
        self.assertEqual(counts(compute_bins(tree, [0.97, 0.70])), [3, 1])

    def test_empty_thresholds(self):
        """Test that no thresholds gives no levels."""
        tree = parse_newick(LEGACY_TREE)
        self.assertEqual(compute_bins(tree, []), [])
        self.assertEqual(compute_bins(tree, np.array([])), [])

    def test_single_leaf(self):
        """Test that a lone ingroup leaf is always one cluster."""
        leaf = Node("A", 0.1)
        self.assertEqual(counts(compute_bins(leaf, [0.0, 0.5, 1.0])), [1, 1, 1])

    def test_outgroup_only(self):
        """Test that the outgroup on its own gives zero clusters."""
        tree = parse_newick(SCENARIO_TREE, outgroup="O")
        outgroup = tree.find("O")
        self.assertEqual(counts(compute_bins(outgroup, [0.5, 1.0])), [0, 0])

    def test_threshold_one_splits_to_distinct_leaves(self):
        """Test that identity 1.0 separates every leaf on a non-zero branch."""
        tree = parse_newick(SCENARIO_TREE, outgroup="O")
        self.assertEqual(counts(compute_bins(tree, [1.0])), [4])

    def test_zero_length_cherry(self):
        """Test that identical sequences share a cluster below 1.0 only."""
        tree = parse_newick("((A:0,B:0):0.1,O:0.5);", outgroup="O")
        self.assertEqual(counts(compute_bins(tree, [0.999, 1.0])), [1, 2])

    def test_diameter_at_gap_is_split(self):
        """Test that a diameter equal to the gap is split."""
        tree = parse_newick("(A:0.05,B:0.05);")
        self.assertEqual(counts(compute_bins(tree, [0.9])), [2])

    def test_diameter_just_below_gap_is_one_cluster(self):
        """Test that a diameter clearly below gap - EPSILON is homogeneous."""
        tree = parse_newick("(A:0.049999,B:0.049999);")
        self.assertEqual(counts(compute_bins(tree, [0.9])), [1])

    def test_collapsed_clade_counts_once(self):
        """Test that collapsed clades act as leaves."""
        tree = parse_newick(SCENARIO_TREE, outgroup="O")
        cd = tree.parent(tree.find("C"))
        cd.collapse("Ecotype2")
        self.assertEqual(counts(compute_bins(tree, [0.97, 1.0])), [2, 3])

    def test_subtree_binning(self):
        """Test binning a clade on its own."""
        tree = parse_newick(SCENARIO_TREE, outgroup="O")
        cd = tree.parent(tree.find("C"))
        self.assertEqual(counts(compute_bins(cd, [0.9, 0.97])), [1, 2])

    def test_binning_does_not_modify_tree(self):
        """Test that binning leaves the tree untouched."""
        tree = parse_newick(LEGACY_TREE, outgroup="E")
        before = tree.to_newick()
        compute_bins(tree, DEFAULT_THRESHOLDS)
        self.assertEqual(tree.to_newick(), before)
        self.assertFalse(any(node.collapsed for node in tree.nodes()))

    def test_monotone_on_random_trees(self):
        """Test that counts never decrease as the threshold rises."""
        rng = random.Random(7)
        for _ in range(25):
            n_leaves = rng.randint(1, 40)
            tree = random_tree(rng, n_leaves)
            values = counts(compute_bins(tree, DEFAULT_THRESHOLDS))
            self.assertEqual(values, sorted(values))
            self.assertGreaterEqual(values[0], 1)
            self.assertLessEqual(values[-1], n_leaves)

    def test_deep_tree(self):
        """Test binning a caterpillar deeper than the recursion limit."""
        node = Node("A0", 0.001)
        for i in range(1, 3000):
            node = Node("", 0.0001, [node, Node(f"A{i}", 0.001)])
        node.branch_length = 0.0
        tree = Tree(node)
        values = counts(compute_bins(tree, [0.5, 1.0]))
        self.assertEqual(values, [1, 3000])


class TestMatrixBinning(unittest.TestCase):
    """Test binning from a divergence matrix."""

    def setUp(self):
        self.matrix = np.array([
            [0.00, 0.02, 0.10, 0.30],
            [0.02, 0.00, 0.12, 0.30],
            [0.10, 0.12, 0.00, 0.30],
            [0.30, 0.30, 0.30, 0.00],
        ])

    def test_counts_follow_complete_linkage(self):
        """Test cluster counts at several thresholds."""
        levels = compute_bins_from_distances(self.matrix, [0.5, 0.8, 0.95, 0.99, 1.0])
        self.assertEqual(counts(levels), [1, 2, 3, 4, 4])

    def test_matrix_from_tree_agrees_with_tree(self):
        """Test that patristic matrices bin like the tree they came from."""
        tree = parse_newick(LEGACY_TREE)
        _, matrix = tree.distance_matrix()
        self.assertEqual(
            counts(compute_bins_from_distances(matrix, DEFAULT_THRESHOLDS)),
            counts(compute_bins(tree, DEFAULT_THRESHOLDS)),
        )

    def test_single_sequence(self):
        """Test that one sequence is one cluster."""
        levels = compute_bins_from_distances(np.zeros((1, 1)), [0.5, 1.0])
        self.assertEqual(counts(levels), [1, 1])

    def test_empty_matrix(self):
        """Test that no sequences give no clusters."""
        levels = compute_bins_from_distances(np.zeros((0, 0)), [0.5])
        self.assertEqual(counts(levels), [0])

    def test_non_square_matrix(self):
        """Test that a non-square matrix raises ValueError."""
        with self.assertRaises(ValueError):
            compute_bins_from_distances(np.zeros((2, 3)), [0.5])


class TestBinLevels(unittest.TestCase):
    """Test BinLevel values and helpers."""

    def test_str(self):
        """Test the 'crit: count' rendering."""
        self.assertEqual(str(BinLevel(0.95, 12)), "0.950: 12")

    def test_validation(self):
        """Test that out-of-range values are rejected."""
        with self.assertRaises(ValueError):
            BinLevel(1.5, 1)
        with self.assertRaises(ValueError):
            BinLevel(0.5, -1)

    def test_compact_bins(self):
        """Test that runs of equal counts keep their first level."""
        levels = [BinLevel(0.6, 1), BinLevel(0.7, 1), BinLevel(0.8, 2),
                  BinLevel(0.9, 2), BinLevel(1.0, 3)]
        compacted = compact_bins(levels)
        self.assertEqual([l.threshold for l in compacted], [0.6, 0.8, 1.0])
        self.assertEqual(counts(compacted), [1, 2, 3])
        self.assertEqual(compact_bins([]), [])

    def test_format_bin_levels(self):
        """Test multi-line rendering."""
        text = format_bin_levels([BinLevel(0.6, 1), BinLevel(1.0, 4)])
        self.assertEqual(text, "0.600: 1\n1.000: 4")

    def test_bins_to_dataframe(self):
        """Test the crit/level table."""
        df = bins_to_dataframe([BinLevel(0.6, 1), BinLevel(1.0, 4)])
        self.assertEqual(list(df.columns), ["crit", "level"])
        self.assertEqual(df["level"].tolist(), [1, 4])


if __name__ == '__main__':
    unittest.main()
