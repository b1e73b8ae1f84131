"""
Rooted Phylogenetic Trees

This module provides the tree structure that binning and demarcation walk
over: a rooted tree of named nodes with branch lengths, parsed from and
written to Newick (bracket) notation.

Tree Model:
- Each Node owns its ordered list of children; a node without children is a
  leaf. Parent relations are not stored on nodes. The owning Tree keeps an
  index arena (pre-order node list plus parent indices) for ancestor
  queries, so ownership stays strictly top-down.
- One leaf may be designated the outgroup. By convention it is the first
  listed taxon (the first sequence of the alignment). The outgroup is used to
  root the tree and is never assigned to an ecotype.
- A node can be collapsed once its clade has been demarcated as a single
  ecotype. A collapsed node behaves as a leaf for every later walk but keeps
  its children so the full topology can still be written out.

Distances:
- max_depth(): longest root-to-leaf path inside a subtree
- max_pairwise_leaf_distance(): the complete-linkage diameter of a subtree,
  the sum of the two largest (branch length + max depth) values over its
  children. This is the single metric that governs binning.

Newick Parsing:
- Only the first tree of a multi-tree string is read (PHYLIP tools may emit
  several trees separated by semicolons)
- Whitespace is ignored outside quoted labels
- 'Quoted labels' and [comments] are supported
- Any syntax problem raises MalformedTreeError naming the offending token and
  its position; no partial tree is ever returned

Example Usage:
    >>> from ecotyper.tree import parse_newick
    >>> tree = parse_newick("((A:0.1,B:0.2):0.1,(C:0.1,D:0.1):0.2,O:0.5);", outgroup="O")
    >>> tree.ingroup_names()
    ['A', 'B', 'C', 'D']
    >>> tree.find("A").is_outgroup()
    False
"""

from typing import Dict, Iterator, List, Optional, Tuple, Union
from pathlib import Path
import copy
import logging
import math

import numpy as np
from Bio.Phylo.BaseTree import Clade
from Bio.Phylo.BaseTree import Tree as PhyloTree

# Configure logging
logger = logging.getLogger(__name__)

# Absolute tolerance used when comparing branch lengths of two trees
BRANCH_LENGTH_TOLERANCE = 1e-9

# Characters that end an unquoted Newick label
_NEWICK_DELIMITERS = set("(),:;[]'")


class MalformedTreeError(ValueError):
    """
    Raised when Newick text cannot be parsed into a tree.

    Attributes
    ----------
    token : str or None
        The offending token
    position : int or None
        Character offset of the offending token in the input text
    """

    def __init__(self, message: str, token: Optional[str] = None,
                 position: Optional[int] = None):
        self.token = token
        self.position = position
        if token is not None:
            message = f"{message}: unexpected token {token!r} at position {position}"
        super().__init__(f"Malformed Newick tree, {message}")


# ============================================================================
# Tree Nodes
# ============================================================================

class Node:
    """
    A node of a rooted phylogenetic tree.

    Parameters
    ----------
    name : str, optional
        Node name; required for leaves, may be blank for internal nodes
    branch_length : float, optional
        Distance to the parent node (default: 0.0)
    children : list of Node, optional
        Ordered child nodes (default: none, i.e. a leaf)
    """

    def __init__(self, name: str = "", branch_length: float = 0.0,
                 children: Optional[List["Node"]] = None):
        self.name = name
        self.branch_length = float(branch_length)
        self.children: List[Node] = list(children) if children else []
        self.outgroup = False
        self.collapsed = False
        self.index = -1

    def __repr__(self) -> str:
        kind = "leaf" if self.is_leaf() else f"{len(self.children)} children"
        flags = ""
        if self.outgroup:
            flags += ", outgroup"
        if self.collapsed:
            flags += ", collapsed"
        return f"Node({self.name!r}, {self.branch_length}, {kind}{flags})"

    def is_leaf(self) -> bool:
        """True for nodes without children and for collapsed nodes."""
        return self.collapsed or not self.children

    def is_outgroup(self) -> bool:
        return self.outgroup

    def iter_preorder(self) -> Iterator["Node"]:
        """
        Iterate over this subtree in pre-order.

        Collapsed nodes are yielded but not descended into.
        """
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            if not node.is_leaf():
                stack.extend(reversed(node.children))

    def descendant_leaves(self) -> List["Node"]:
        """
        Return all leaves of this subtree in pre-order.

        The outgroup is included when it lies in the subtree. A collapsed node
        counts as one leaf.
        """
        return [node for node in self.iter_preorder() if node.is_leaf()]

    def leaf_names(self) -> List[str]:
        return [node.name for node in self.descendant_leaves()]

    def max_depth(self) -> float:
        """
        Return the maximum distance from this node down to any of its leaves.

        Returns
        -------
        float
            Longest root-to-leaf path length within this subtree (0 for a leaf)
        """
        return subtree_metrics(self)[id(self)][0]

    def max_pairwise_leaf_distance(self) -> float:
        """
        Return the complete-linkage diameter of this subtree.

        For every child, the child's branch length plus its max_depth() is
        the farthest a leaf in that child's subtree lies from this node. The
        largest patristic distance between two leaves of this subtree is the
        sum of the two largest such values.

        Returns
        -------
        float
            Maximum patristic distance between two leaves (0 for a leaf)
        """
        return subtree_metrics(self)[id(self)][1]

    def collapse(self, label: Optional[str] = None) -> None:
        """
        Mark this clade as a single ecotype.

        Children are kept so the original topology can still be serialized,
        but every later walk treats the node as a leaf. Collapsing an already
        collapsed node only (re)applies the label.

        Parameters
        ----------
        label : str, optional
            New name for the node (e.g. an ecotype label)
        """
        self.collapsed = True
        if label is not None:
            self.name = label

    def to_newick(self, precision: Optional[int] = None,
                  collapse: bool = False) -> str:
        """
        Serialize this subtree to Newick notation.

        Parameters
        ----------
        precision : int, optional
            Decimal places for branch lengths. None writes the shortest
            representation that reads back to the same float.
        collapse : bool, optional
            Write collapsed clades as leaves named by their label
            (default: False, write the full topology)

        Returns
        -------
        str
            Newick string terminated by ';'
        """
        return _write_newick(self, precision, collapse, is_root=True) + ";"


def subtree_metrics(root: Node) -> Dict[int, Tuple[float, float]]:
    """
    Compute (max_depth, diameter) for every node of a subtree.

    Walks the subtree iteratively in post-order so deep caterpillar trees do
    not hit the interpreter recursion limit. Collapsed nodes count as leaves.

    Returns
    -------
    Dict[int, Tuple[float, float]]
        Mapping of id(node) to (max_depth, max_pairwise_leaf_distance)
    """
    metrics: Dict[int, Tuple[float, float]] = {}
    stack: List[Tuple[Node, bool]] = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if node.is_leaf():
            metrics[id(node)] = (0.0, 0.0)
            continue
        if not expanded:
            stack.append((node, True))
            stack.extend((child, False) for child in node.children)
            continue
        reach = sorted(
            (child.branch_length + metrics[id(child)][0] for child in node.children),
            reverse=True,
        )
        diameter = reach[0] + reach[1] if len(reach) > 1 else reach[0]
        metrics[id(node)] = (reach[0], diameter)
    return metrics


# ============================================================================
# Trees
# ============================================================================

class Tree:
    """
    A rooted phylogenetic tree with an index arena for ancestor queries.

    Parameters
    ----------
    root : Node
        Root node; the tree takes ownership of the whole node hierarchy
    outgroup : str, optional
        Name of the outgroup leaf (default: no outgroup)

    Notes
    -----
    The arena is rebuilt whenever the shape changes (remove_leaf). Callers
    that edit `children` lists directly must call reindex().
    """

    def __init__(self, root: Node, outgroup: Optional[str] = None):
        self.root = root
        self.root.branch_length = self.root.branch_length or 0.0
        self.outgroup: Optional[str] = None
        self._nodes: List[Node] = []
        self._parents: List[Optional[int]] = []
        self.reindex()
        if outgroup is not None:
            self.set_outgroup(outgroup)

    def __repr__(self) -> str:
        return (f"Tree({len(self.leaves())} leaves, "
                f"outgroup={self.outgroup!r})")

    def __str__(self) -> str:
        return self.to_newick()

    def __eq__(self, other: object) -> bool:
        """Same topology (in child order), names and branch lengths."""
        if not isinstance(other, Tree):
            return NotImplemented
        pairs = [(self.root, other.root)]
        while pairs:
            a, b = pairs.pop()
            if a.name != b.name or len(a.children) != len(b.children):
                return False
            if not math.isclose(a.branch_length, b.branch_length,
                                abs_tol=BRANCH_LENGTH_TOLERANCE):
                return False
            pairs.extend(zip(a.children, b.children))
        return True

    __hash__ = None

    # ------------------------------------------------------------------
    # Arena
    # ------------------------------------------------------------------

    def reindex(self) -> None:
        """Rebuild the pre-order node arena and parent index list."""
        self._nodes = []
        self._parents = []
        stack: List[Tuple[Node, Optional[int]]] = [(self.root, None)]
        while stack:
            node, parent_index = stack.pop()
            node.index = len(self._nodes)
            self._nodes.append(node)
            self._parents.append(parent_index)
            for child in reversed(node.children):
                stack.append((child, node.index))

    def nodes(self) -> List[Node]:
        """All nodes in pre-order, including those below collapsed nodes."""
        return list(self._nodes)

    def _check_owned(self, node: Node) -> None:
        if not 0 <= node.index < len(self._nodes) or self._nodes[node.index] is not node:
            raise ValueError(f"Node {node.name!r} does not belong to this tree")

    def parent(self, node: Node) -> Optional[Node]:
        """Return the parent of a node, or None for the root."""
        self._check_owned(node)
        parent_index = self._parents[node.index]
        return None if parent_index is None else self._nodes[parent_index]

    def ancestors(self, node: Node) -> List[Node]:
        """Return the ancestors of a node, nearest first, ending at the root."""
        self._check_owned(node)
        result = []
        parent_index = self._parents[node.index]
        while parent_index is not None:
            result.append(self._nodes[parent_index])
            parent_index = self._parents[parent_index]
        return result

    # ------------------------------------------------------------------
    # Leaves and outgroup
    # ------------------------------------------------------------------

    def leaves(self) -> List[Node]:
        return self.root.descendant_leaves()

    def leaf_names(self) -> List[str]:
        return self.root.leaf_names()

    def ingroup_names(self) -> List[str]:
        """Names of all leaves except the outgroup, in pre-order."""
        return [leaf.name for leaf in self.leaves() if not leaf.is_outgroup()]

    def find(self, name: str) -> Optional[Node]:
        """Return the first node (any depth, collapse ignored) with this name."""
        for node in self._nodes:
            if node.name == name:
                return node
        return None

    def set_outgroup(self, name: Optional[str] = None) -> Node:
        """
        Designate the outgroup leaf.

        Parameters
        ----------
        name : str, optional
            Name of the outgroup. None selects the first-listed taxon
            (the first leaf in pre-order).

        Returns
        -------
        Node
            The outgroup node

        Raises
        ------
        MalformedTreeError
            If no leaf has this name, or the named node is the root or
            an internal node
        """
        if name is None:
            candidate = self._nodes[0] if not self.root.children else next(
                node for node in self._nodes if not node.children
            )
        else:
            candidate = self.find(name)
            if candidate is None:
                raise MalformedTreeError(f"outgroup {name!r} is not a leaf of the tree")
        if candidate is self.root or candidate.children:
            raise MalformedTreeError(f"outgroup {candidate.name!r} must be a non-root leaf")

        for node in self._nodes:
            node.outgroup = False
        candidate.outgroup = True
        self.outgroup = candidate.name
        logger.debug(f"Outgroup set to {candidate.name}")
        return candidate

    # ------------------------------------------------------------------
    # Shape changes
    # ------------------------------------------------------------------

    def remove_leaf(self, name: str) -> None:
        """
        Remove a leaf from the tree.

        A parent left with a single child is spliced out and its branch
        length added to that child. If the root is left with a single child,
        that child becomes the new root.

        Raises
        ------
        KeyError
            If no leaf has this name
        """
        node = self.find(name)
        if node is None or node.children:
            raise KeyError(f"No leaf named {name!r}")
        parent = self.parent(node)
        if parent is None:
            raise ValueError("Cannot remove the only node of a tree")

        parent.children.remove(node)
        if node.outgroup:
            self.outgroup = None

        if len(parent.children) == 1:
            only_child = parent.children[0]
            grandparent = self.parent(parent)
            if grandparent is None:
                only_child.branch_length = 0.0
                self.root = only_child
            else:
                only_child.branch_length += parent.branch_length
                position = grandparent.children.index(parent)
                grandparent.children[position] = only_child
        self.reindex()
        logger.debug(f"Removed leaf {name}")

    def sort_children(self) -> None:
        """Order every node's children by ascending max depth, then name."""
        metrics = subtree_metrics(self.root)
        for node in self._nodes:
            if node.children:
                node.children.sort(
                    key=lambda child: (child.branch_length + metrics.get(id(child), (0.0, 0.0))[0],
                                       child.name)
                )
        self.reindex()

    def copy(self) -> "Tree":
        """Deep copy, including outgroup and collapse annotations."""
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Distances
    # ------------------------------------------------------------------

    def distance_matrix(self) -> Tuple[List[str], np.ndarray]:
        """
        Compute patristic distances between all leaves.

        Returns
        -------
        Tuple[List[str], np.ndarray]
            Leaf names in pre-order and the symmetric distance matrix
        """
        leaves = self.leaves()
        depth: Dict[int, float] = {self.root.index: 0.0}
        for node in self.root.iter_preorder():
            for child in ([] if node.is_leaf() else node.children):
                depth[child.index] = depth[node.index] + child.branch_length

        lineages = [[leaf.index] + [a.index for a in self.ancestors(leaf)] for leaf in leaves]
        n = len(leaves)
        matrix = np.zeros((n, n), dtype=float)
        for i in range(n):
            ancestors_i = set(lineages[i])
            for j in range(i + 1, n):
                common = next(index for index in lineages[j] if index in ancestors_i)
                d = depth[lineages[i][0]] + depth[lineages[j][0]] - 2.0 * depth[common]
                matrix[i, j] = matrix[j, i] = d
        return [leaf.name for leaf in leaves], matrix

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_newick(self, precision: Optional[int] = None, collapse: bool = False) -> str:
        """Serialize the whole tree to Newick notation (see Node.to_newick)."""
        return self.root.to_newick(precision=precision, collapse=collapse)

    def save(self, output_path: Union[str, Path], precision: Optional[int] = None,
             collapse: bool = False) -> Path:
        """
        Write the tree to a Newick file.

        Returns
        -------
        Path
            Path of the written file
        """
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as fh:
            fh.write(self.to_newick(precision=precision, collapse=collapse) + "\n")
        logger.debug(f"Wrote tree to {path}")
        return path

    def to_phylo(self, collapse: bool = False) -> PhyloTree:
        """
        Convert to a Bio.Phylo tree (for drawing or writing other formats).

        Parameters
        ----------
        collapse : bool, optional
            Turn collapsed clades into terminal clades named by their label
        """
        clades: Dict[int, Clade] = {}
        for node in reversed(self._nodes):
            keep_children = node.children and not (collapse and node.collapsed)
            clades[node.index] = Clade(
                branch_length=node.branch_length,
                name=node.name or None,
                clades=[clades[child.index] for child in node.children] if keep_children else [],
            )
        return PhyloTree(root=clades[self.root.index], rooted=True)

    @classmethod
    def from_phylo(cls, phylo_tree: PhyloTree, outgroup: Optional[str] = None) -> "Tree":
        """
        Build a Tree from a Bio.Phylo tree.

        Missing branch lengths become 0.0 and missing names become blank.
        """
        def convert(clade: Clade) -> Node:
            return Node(
                name=clade.name or "",
                branch_length=clade.branch_length or 0.0,
                children=[convert(child) for child in clade.clades],
            )

        root = convert(phylo_tree.root)
        root.branch_length = 0.0
        return cls(root, outgroup=outgroup)


# ============================================================================
# Newick Writing
# ============================================================================

def _format_length(value: float, precision: Optional[int]) -> str:
    if precision is None:
        return repr(float(value))
    return f"{value:.{precision}f}"


def _quote_name(name: str) -> str:
    """Quote a label if it contains Newick delimiters or whitespace."""
    if name and (set(name) & _NEWICK_DELIMITERS or any(c.isspace() for c in name)):
        return "'" + name.replace("'", "''") + "'"
    return name


def _write_newick(root: Node, precision: Optional[int], collapse: bool,
                  is_root: bool) -> str:
    """Iterative post-order writer (safe for very deep trees)."""
    rendered: Dict[int, str] = {}
    stack: List[Tuple[Node, bool]] = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        show_children = node.children and not (collapse and node.collapsed)
        if show_children and not expanded:
            stack.append((node, True))
            stack.extend((child, False) for child in node.children)
            continue
        text = ""
        if show_children:
            text = "(" + ",".join(rendered.pop(id(child)) for child in node.children) + ")"
        text += _quote_name(node.name)
        if node is not root or not is_root or node.branch_length:
            text += ":" + _format_length(node.branch_length, precision)
        rendered[id(node)] = text
    return rendered[id(root)]


# ============================================================================
# Newick Parsing
# ============================================================================

def _tokenize(text: str) -> Iterator[Tuple[str, int]]:
    """
    Split Newick text into (token, position) pairs.

    Punctuation characters are single tokens, labels (quoted or not) are one
    token each; whitespace and [comments] are dropped. Quoted labels are
    returned with their surrounding quotes so the parser can tell them apart.
    """
    i = 0
    n = len(text)
    while i < n:
        char = text[i]
        if char.isspace():
            i += 1
        elif char == "[":
            end = text.find("]", i)
            if end < 0:
                raise MalformedTreeError("unterminated comment", "[", i)
            i = end + 1
        elif char == "]":
            raise MalformedTreeError("unbalanced comment bracket", "]", i)
        elif char in "(),:;":
            yield char, i
            i += 1
        elif char == "'":
            j = i + 1
            while True:
                j = text.find("'", j)
                if j < 0:
                    raise MalformedTreeError("unterminated quoted label", "'", i)
                if j + 1 < n and text[j + 1] == "'":
                    j += 2
                    continue
                break
            yield text[i:j + 1], i
            i = j + 1
        else:
            j = i
            while j < n and text[j] not in _NEWICK_DELIMITERS and not text[j].isspace():
                j += 1
            yield text[i:j], i
            i = j


def _label_value(token: str) -> str:
    if token.startswith("'"):
        return token[1:-1].replace("''", "'")
    return token


def parse_newick(text: str, outgroup: Optional[str] = None) -> Tree:
    """
    Parse Newick text into a Tree.

    Parameters
    ----------
    text : str
        Newick formatted tree. Only the first tree is read when the text
        contains several trees separated by ';'.
    outgroup : str, optional
        Name of the outgroup leaf

    Returns
    -------
    Tree
        Parsed tree

    Raises
    ------
    MalformedTreeError
        On any syntax error, unnamed or duplicated leaf, invalid branch
        length, or unknown outgroup

    Examples
    --------
    >>> tree = parse_newick("((A:0.1,B:0.2):0.1,C:0.3);")
    >>> tree.leaf_names()
    ['A', 'B', 'C']
    """
    if text is None or not text.strip():
        raise MalformedTreeError("empty tree")

    root = Node()
    node = root
    # Open internal nodes together with the position of their '('
    open_nodes: List[Tuple[Node, int]] = []
    # fresh: nothing read for node yet; closed: after ')'; named: after a
    # label; measured: after a branch length
    state = "fresh"
    tokens = _tokenize(text)
    leaf_names = set()

    def finish_node(token: str, position: int) -> None:
        if not node.children:
            if not node.name:
                raise MalformedTreeError("leaf without a name", token, position)
            if node.name in leaf_names:
                raise MalformedTreeError(f"duplicate leaf name {node.name!r}", token, position)
            leaf_names.add(node.name)

    terminated = False
    for token, position in tokens:
        if token == "(":
            if state != "fresh":
                raise MalformedTreeError("misplaced subtree", token, position)
            child = Node()
            node.children.append(child)
            open_nodes.append((node, position))
            node = child
        elif token == ",":
            if not open_nodes:
                raise MalformedTreeError("sibling outside of any subtree", token, position)
            finish_node(token, position)
            sibling = Node()
            open_nodes[-1][0].children.append(sibling)
            node = sibling
            state = "fresh"
        elif token == ")":
            if not open_nodes:
                raise MalformedTreeError("unbalanced parentheses", token, position)
            finish_node(token, position)
            node = open_nodes.pop()[0]
            state = "closed"
        elif token == ":":
            if state == "measured":
                raise MalformedTreeError("second branch length", token, position)
            length_token, length_position = next(tokens, (None, len(text)))
            if length_token is None or length_token in "(),:;":
                raise MalformedTreeError("missing branch length", length_token or "<end>",
                                         length_position)
            try:
                length = float(length_token)
            except ValueError:
                raise MalformedTreeError("branch length is not a number",
                                         length_token, length_position) from None
            if not math.isfinite(length) or length < 0:
                raise MalformedTreeError("branch length must be finite and non-negative",
                                         length_token, length_position)
            node.branch_length = length
            state = "measured"
        elif token == ";":
            if open_nodes:
                raise MalformedTreeError("unbalanced parentheses", "(", open_nodes[-1][1])
            finish_node(token, position)
            terminated = True
            break
        else:
            if state in ("named", "measured"):
                raise MalformedTreeError("unexpected label", token, position)
            node.name = _label_value(token)
            state = "named"

    if not terminated:
        if open_nodes:
            raise MalformedTreeError("unbalanced parentheses", "(", open_nodes[-1][1])
        finish_node("<end>", len(text))

    root.branch_length = root.branch_length or 0.0
    tree = Tree(root, outgroup=outgroup)
    logger.debug(f"Parsed Newick tree with {len(leaf_names)} leaves")
    return tree


def load_tree(tree_file: Union[str, Path], outgroup: Optional[str] = None) -> Tree:
    """
    Load a tree from a Newick file.

    Parameters
    ----------
    tree_file : Union[str, Path]
        Path to the Newick file
    outgroup : str, optional
        Name of the outgroup leaf

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    MalformedTreeError
        If the file does not hold a valid tree
    """
    path = Path(tree_file)
    if not path.exists():
        raise FileNotFoundError(f"Tree file not found: {path}")
    with open(path, 'r') as fh:
        text = fh.read()
    tree = parse_newick(text, outgroup=outgroup)
    logger.info(f"Loaded tree with {len(tree.leaves())} leaves from {path}")
    return tree
