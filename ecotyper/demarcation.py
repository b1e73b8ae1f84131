"""
Recursive Ecotype Demarcation

This module partitions the ingroup leaves of a tree into ecotypes. Starting
at the root, each candidate clade is binned on its own, the oracle is asked
whether the clade's binning pattern is best explained by a single population,
and the clade is either declared one ecotype (collapsed and labelled) or
split into its children, which become candidates in turn.

Per-Clade Decision:
1. sample = ingroup leaves of the clade; an empty sample is skipped
2. a single ingroup leaf is its own ecotype (no oracle call)
3. otherwise the clade is binned and the oracle is called once with
       npop_estimate = max(1, global_npop * |sample| // nu)
   - FINE_SCALE adopts the most likely candidate
   - COARSE_SCALE adopts the npop = 1 candidate whenever its likelihood is
     above EPSILON, else the most likely candidate
4. adopted npop == 1: the clade is collapsed and becomes one ecotype;
   otherwise each child is evaluated

Walk Order:
Candidates are evaluated one frontier (tree level of pending clades) at a
time. Oracle calls within a frontier are independent and can run in a thread
pool; iteration tags are handed out in frontier order before any call is
made, so they are unique and increasing whatever the thread count. Ecotypes
are reported in tree pre-order, which is the order a depth-first walk emits
them, and labelled in that order once the walk is complete.

A node is collapsed only after its own decision is known. If the oracle
fails the error propagates and clades decided earlier keep their collapse.

Example Usage:
    >>> from ecotyper.demarcation import demarcate
    >>> from ecotyper.oracle import ParameterSet
    >>> result = demarcate(
    ...     tree, oracle,
    ...     global_params=ParameterSet(npop=5, omega=1.2, sigma=10.0, likelihood=0.4),
    ...     nu=40, sequence_length=1200,
    ... )
    >>> print(result)
      Ecotype    1: [A, B]
      Ecotype    2: [C]
"""

from dataclasses import dataclass, field
from enum import Enum
from multiprocessing.pool import ThreadPool
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import random

import pandas as pd

from .binning import BinLevel, DEFAULT_THRESHOLDS, EPSILON, compact_bins, compute_bins
from .config import DemarcationConfig
from .oracle import (
    DemarcationOracle,
    OracleRequest,
    OracleResponse,
    ParameterSet,
    make_random_seed,
)
from .tree import Node, Tree

# Configure logging
logger = logging.getLogger(__name__)


class PrecisionMode(Enum):
    """How eagerly a clade is accepted as a single ecotype."""
    FINE_SCALE = "fine"
    COARSE_SCALE = "coarse"

    @classmethod
    def from_string(cls, value: str) -> "PrecisionMode":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(
                f"Invalid precision mode: {value}. Must be 'fine' or 'coarse'"
            ) from None


@dataclass(frozen=True)
class Ecotype:
    """
    A group of sequences demarcated as one population.

    Attributes
    ----------
    label : str
        Ecotype label; collapsed clades carry it as their node name
    members : Tuple[str, ...]
        Sequence names in tree order
    node_index : int
        Arena index of the clade (or leaf) the ecotype was read from
    """
    label: str
    members: Tuple[str, ...]
    node_index: int

    def __post_init__(self):
        object.__setattr__(self, 'members', tuple(self.members))
        if not self.members:
            raise ValueError(f"Ecotype {self.label} has no members")

    def __len__(self) -> int:
        return len(self.members)

    def __contains__(self, name: str) -> bool:
        return name in self.members


@dataclass(frozen=True)
class CladeDecision:
    """Record of one oracle consultation."""
    iteration: int
    node_index: int
    node_name: str
    sample_size: int
    bins: Tuple[BinLevel, ...]
    npop_estimate: int
    response: OracleResponse
    adopted: ParameterSet

    @property
    def is_ecotype(self) -> bool:
        return self.adopted.npop == 1


@dataclass
class DemarcationResult:
    """
    Outcome of a demarcation run.

    Attributes
    ----------
    ecotypes : List[Ecotype]
        Ecotypes in depth-first order; together they partition the ingroup
    decisions : List[CladeDecision]
        One entry per oracle call, in iteration order
    precision : PrecisionMode
        Decision rule used for the run
    """
    ecotypes: List[Ecotype] = field(default_factory=list)
    decisions: List[CladeDecision] = field(default_factory=list)
    precision: PrecisionMode = PrecisionMode.FINE_SCALE

    def __str__(self) -> str:
        return "".join(
            f"  Ecotype {number:4d}: [{', '.join(ecotype.members)}]\n"
            for number, ecotype in enumerate(self.ecotypes, 1)
        )

    @property
    def oracle_calls(self) -> int:
        return len(self.decisions)

    def ecotype_of(self, name: str) -> Optional[Ecotype]:
        """Return the ecotype containing a sequence, or None (e.g. the outgroup)."""
        for ecotype in self.ecotypes:
            if name in ecotype:
                return ecotype
        return None

    def membership(self) -> Dict[str, str]:
        """Map every ingroup sequence name to its ecotype label."""
        return {
            member: ecotype.label
            for ecotype in self.ecotypes
            for member in ecotype.members
        }

    def to_dataframe(self) -> pd.DataFrame:
        """
        One row per sequence.

        Returns
        -------
        pd.DataFrame
            Columns 'ecotype' (1-based number), 'label' and 'sequence'
        """
        rows = [
            {"ecotype": number, "label": ecotype.label, "sequence": member}
            for number, ecotype in enumerate(self.ecotypes, 1)
            for member in ecotype.members
        ]
        return pd.DataFrame(rows, columns=["ecotype", "label", "sequence"])

    def decisions_to_dataframe(self) -> pd.DataFrame:
        """One row per oracle call with both candidates and the adopted npop."""
        rows = [
            {
                "iteration": d.iteration,
                "node": d.node_name,
                "sample_size": d.sample_size,
                "npop_estimate": d.npop_estimate,
                "npop_one_likelihood": d.response.one.likelihood,
                "best_npop": d.response.best.npop,
                "best_likelihood": d.response.best.likelihood,
                "adopted_npop": d.adopted.npop,
                "ecotype": d.is_ecotype,
            }
            for d in self.decisions
        ]
        return pd.DataFrame(rows, columns=[
            "iteration", "node", "sample_size", "npop_estimate",
            "npop_one_likelihood", "best_npop", "best_likelihood",
            "adopted_npop", "ecotype",
        ])


def choose_candidate(response: OracleResponse, precision: PrecisionMode) -> ParameterSet:
    """Apply the precision mode's decision rule to an oracle response."""
    if precision is PrecisionMode.COARSE_SCALE and response.one.likelihood > EPSILON:
        return response.one
    return response.best


def _ingroup_sample(node: Node) -> List[str]:
    return [leaf.name for leaf in node.descendant_leaves() if not leaf.is_outgroup()]


def _evaluate_all(oracle: DemarcationOracle, requests: List[OracleRequest],
                  n_threads: int) -> List[OracleResponse]:
    if n_threads > 1 and len(requests) > 1:
        with ThreadPool(processes=min(n_threads, len(requests))) as pool:
            return pool.map(oracle.evaluate, requests)
    return [oracle.evaluate(request) for request in requests]


def demarcate(
    tree: Tree,
    oracle: DemarcationOracle,
    global_params: ParameterSet,
    nu: int,
    sequence_length: int,
    config: Optional[DemarcationConfig] = None,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
    iteration_start: int = 1,
) -> DemarcationResult:
    """
    Partition the ingroup of a tree into ecotypes.

    Parameters
    ----------
    tree : Tree
        Tree to demarcate; its outgroup (if any) is never assigned. Demarcated
        clades are collapsed and renamed in place. A clade is first named
        after the iteration that decided it and relabelled in depth-first
        order once the walk completes.
    oracle : DemarcationOracle
        Evaluates each candidate clade
    global_params : ParameterSet
        Whole-dataset estimate (omega, sigma, npop, likelihood)
    nu : int
        Total number of ingroup sequences the global estimate was made from
    sequence_length : int
        Alignment length after removing gap-only columns
    config : DemarcationConfig, optional
        Precision mode, label prefix, thread count and request constants
        (default: DemarcationConfig())
    thresholds : Sequence[float], optional
        Thresholds for clade-local binning (default: DEFAULT_THRESHOLDS)
    iteration_start : int, optional
        Tag of the first oracle call (default: 1)

    Returns
    -------
    DemarcationResult
        Ecotypes in depth-first order plus the decision log

    Raises
    ------
    ValueError
        If nu or sequence_length is not positive, or the tree has already
        been demarcated
    OracleError
        Propagated unchanged from the oracle
    """
    if config is None:
        config = DemarcationConfig()
    if nu < 1:
        raise ValueError(f"nu must be >= 1, got {nu}")
    if sequence_length < 1:
        raise ValueError(f"sequence_length must be >= 1, got {sequence_length}")
    if any(node.collapsed for node in tree.nodes()):
        raise ValueError("Tree already contains collapsed clades; demarcate a fresh copy")

    precision = PrecisionMode.from_string(config.precision)
    rng = random.Random(config.seed)
    result = DemarcationResult(precision=precision)
    terminals: List[Tuple[Node, List[str]]] = []
    iteration = iteration_start

    logger.info(f"Demarcating {len(tree.ingroup_names())} sequences "
                f"({precision.value} scale, {config.n_threads} thread(s))")

    frontier = [tree.root]
    while frontier:
        pending: List[Tuple[Node, List[str], OracleRequest]] = []
        for node in frontier:
            sample = _ingroup_sample(node)
            if not sample:
                continue
            if node.is_leaf():
                terminals.append((node, sample))
                continue

            bins = compute_bins(node, thresholds)
            if config.compact_bins:
                bins = compact_bins(bins)
            npop_estimate = max(1, global_params.npop * len(sample) // nu)
            request = OracleRequest(
                bins=tuple(bins),
                omega=global_params.omega,
                sigma=global_params.sigma,
                npop=npop_estimate,
                sample_size=len(sample),
                sequence_length=sequence_length,
                likelihood=global_params.likelihood,
                iteration=iteration,
                seed=make_random_seed(rng),
                step=config.step,
                replicates=config.replicates,
                criterion=config.criterion,
            )
            iteration += 1
            pending.append((node, sample, request))

        responses = _evaluate_all(oracle, [request for _, _, request in pending],
                                  config.n_threads)

        next_frontier: List[Node] = []
        for (node, sample, request), response in zip(pending, responses):
            adopted = choose_candidate(response, precision)
            decision = CladeDecision(
                iteration=request.iteration,
                node_index=node.index,
                node_name=node.name,
                sample_size=len(sample),
                bins=request.bins,
                npop_estimate=request.npop,
                response=response,
                adopted=adopted,
            )
            result.decisions.append(decision)
            logger.debug(
                f"Iteration {request.iteration}: {len(sample)} sequences, "
                f"npop estimate {request.npop}, adopted npop {adopted.npop}"
            )
            if decision.is_ecotype:
                # Provisional name keeps the tree serializable if a later call fails
                node.collapse(f"{config.ecotype_prefix}{request.iteration}")
                terminals.append((node, sample))
            else:
                next_frontier.extend(node.children)
        frontier = next_frontier

    terminals.sort(key=lambda item: item[0].index)
    for number, (node, sample) in enumerate(terminals, 1):
        label = f"{config.ecotype_prefix}{number}"
        if node.collapsed:
            node.collapse(label)
        result.ecotypes.append(Ecotype(label=label, members=tuple(sample),
                                       node_index=node.index))

    verify_partition(tree, result.ecotypes)
    logger.info(f"Demarcation found {len(result.ecotypes)} ecotypes "
                f"using {result.oracle_calls} oracle calls")
    return result


def verify_partition(tree: Tree, ecotypes: Sequence[Ecotype]) -> None:
    """
    Check that ecotypes partition the ingroup leaves of a tree.

    Leaves below collapsed clades are included, so this can be called on a
    tree after demarcation.

    Raises
    ------
    ValueError
        If any ecotype is empty, a sequence appears twice, the outgroup is
        assigned, or an ingroup sequence is missing or unknown
    """
    ingroup = {node.name for node in tree.nodes() if not node.children and not node.outgroup}
    seen = set()
    for ecotype in ecotypes:
        if not ecotype.members:
            raise ValueError(f"Ecotype {ecotype.label} is empty")
        for member in ecotype.members:
            if member in seen:
                raise ValueError(f"Sequence {member} assigned to more than one ecotype")
            if member == tree.outgroup:
                raise ValueError(f"Outgroup {member} assigned to ecotype {ecotype.label}")
            seen.add(member)

    missing = ingroup - seen
    unknown = seen - ingroup
    if missing:
        raise ValueError(f"Sequences not assigned to any ecotype: {sorted(missing)}")
    if unknown:
        raise ValueError(f"Ecotypes contain unknown sequences: {sorted(unknown)}")
