"""
Core Pipeline Orchestration for Ecotyper

This module ties the tree, binning, oracle and demarcation modules into the
two workflows exposed on the command line:

1. Binning: load a tree, designate the outgroup and count complete-linkage
   bins over the whole tree at every threshold
2. Demarcation: starting from a global parameter estimate (npop, omega,
   sigma, likelihood) produced by an external hill-climbing run, partition
   the sequences into ecotypes and write tables, trees, figures and an HTML
   report

Output Layout:
    <output_dir>/
        <run>_bins.tsv                 global bin levels
        <run>_ecotypes.csv             sequence -> ecotype membership
        <run>_ecotypes.txt             legacy-style ecotype listing
        <run>_demarcation_log.csv      one row per oracle call
        <run>_demarcated.nwk           tree with ecotype labels on clades
        <run>_collapsed.nwk            tree with ecotype clades as tips
        figures/                       bin level plot, demarcated tree
        work/                          solver request/response files
        <run>_report.html

Example Usage:
    >>> from ecotyper.core import run_demarcation
    >>> from ecotyper.oracle import ParameterSet
    >>> results = run_demarcation(
    ...     tree_file="sequences.nwk",
    ...     output_dir="results/",
    ...     parameters=ParameterSet(npop=5, omega=1.2, sigma=10.0, likelihood=0.4),
    ...     fasta_file="sequences.fasta",
    ... )
    >>> results['n_ecotypes']
    5
"""

from dataclasses import replace
from typing import Any, Dict, Optional, Sequence
from pathlib import Path
import logging
import time

# Local imports
from . import __version__
from . import utils, config, reports, visualization
from .binning import compute_bins, compute_bins_from_distances
from .demarcation import demarcate
from .oracle import DemarcationOracle, FortranDemarcationOracle, ParameterSet
from .tree import Tree, load_tree

# Configure logging
logger = logging.getLogger(__name__)


def _setup_directories(base_output: Path) -> Dict[str, Path]:
    """Create the output directory structure."""
    dirs = {
        'base': base_output,
        'figures': base_output / 'figures',
        'work': base_output / 'work',
    }
    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)
    return dirs


def _output_files(output_path: Path, run_name: str) -> Dict[str, Path]:
    """Table, tree and report outputs of a demarcation run."""
    return {
        'bins': output_path / f"{run_name}_bins.tsv",
        'ecotypes': output_path / f"{run_name}_ecotypes.csv",
        'ecotype_listing': output_path / f"{run_name}_ecotypes.txt",
        'demarcation_log': output_path / f"{run_name}_demarcation_log.csv",
        'demarcated_tree': output_path / f"{run_name}_demarcated.nwk",
        'collapsed_tree': output_path / f"{run_name}_collapsed.nwk",
        'html_report': output_path / f"{run_name}_report.html",
    }


def _check_overwrite(paths: Sequence[Path], cfg: config.PipelineConfig) -> None:
    if cfg.overwrite_existing:
        return
    existing = [str(path) for path in paths if path.exists()]
    if existing:
        raise FileExistsError(
            f"Output files already exist: {', '.join(existing)} "
            f"(set overwrite_existing to replace them)"
        )


def _load_tree_with_outgroup(tree_file: Path, outgroup: Optional[str],
                             fasta_outgroup: Optional[str]) -> Tree:
    """
    Load a tree and designate its outgroup.

    An explicit outgroup wins, then the first alignment record, then the
    first leaf of the tree.
    """
    tree = load_tree(tree_file)
    name = outgroup or fasta_outgroup
    if name is not None and tree.find(name) is None:
        raise ValueError(f"Outgroup {name} is not a leaf of {tree_file}")
    tree.set_outgroup(name)
    logger.info(f"Outgroup: {tree.outgroup}")
    return tree


def run_binning(
    tree_file: str,
    output_dir: str,
    thresholds: Optional[Sequence[float]] = None,
    outgroup: Optional[str] = None,
    fasta_file: Optional[str] = None,
    from_alignment: bool = False,
    config_obj: Optional[config.PipelineConfig] = None,
) -> Dict[str, Any]:
    """
    Compute global bin levels for a tree (or an alignment).

    Parameters
    ----------
    tree_file : str
        Newick tree of the aligned sequences
    output_dir : str
        Directory for output files
    thresholds : Sequence[float], optional
        Thresholds (default: the configured ladder)
    outgroup : str, optional
        Outgroup name (default: first FASTA record, else first leaf)
    fasta_file : str, optional
        Aligned FASTA, used to find the outgroup and for matrix binning
    from_alignment : bool, optional
        Also bin the alignment's divergence matrix (default: False)
    config_obj : PipelineConfig, optional
        Custom configuration object

    Returns
    -------
    Dict[str, Any]
        'success', 'bins' (List[BinLevel]), 'alignment_bins' (or None),
        'files' and 'errors'
    """
    cfg = config_obj or config.get_default_config()
    if thresholds is not None:
        cfg = cfg.update(binning__thresholds=tuple(thresholds))

    output_path = utils.create_output_directory(output_dir)
    run_name = utils.sanitize_filename(Path(tree_file).stem)
    results: Dict[str, Any] = {'success': False, 'files': {}, 'errors': [],
                               'alignment_bins': None}

    if from_alignment and fasta_file is None:
        raise ValueError("Binning from the alignment requires a FASTA file")
    bins_file = output_path / f"{run_name}_bins.tsv"
    alignment_bins_file = output_path / f"{run_name}_alignment_bins.tsv"
    _check_overwrite([bins_file, alignment_bins_file] if from_alignment else [bins_file], cfg)

    summary = utils.summarize_alignment(fasta_file) if fasta_file else None
    tree = _load_tree_with_outgroup(Path(tree_file), outgroup or cfg.demarcation.outgroup,
                                    summary.outgroup if summary else None)

    levels = compute_bins(tree, cfg.binning.thresholds)
    results['bins'] = levels
    results['files']['bins'] = reports.write_bin_levels(levels, bins_file, cfg.binning.compact)

    if from_alignment:
        _, matrix = utils.alignment_divergence_matrix(fasta_file)
        alignment_levels = compute_bins_from_distances(matrix, cfg.binning.thresholds)
        results['alignment_bins'] = alignment_levels
        results['files']['alignment_bins'] = reports.write_bin_levels(
            alignment_levels, alignment_bins_file, cfg.binning.compact,
        )

    if cfg.make_plots:
        try:
            results['files']['bins_plot'] = visualization.plot_bin_levels(
                levels, output_path / f"{run_name}_bins.png",
                comparison=results['alignment_bins'], labels=("tree", "alignment"),
            )
        except Exception as e:
            logger.warning(f"Bin level plot failed: {e}")
            results['errors'].append(f"Bin level plot failed: {e}")

    results['success'] = True
    return results


def run_demarcation(
    tree_file: str,
    output_dir: str,
    parameters: ParameterSet,
    nu: Optional[int] = None,
    sequence_length: Optional[int] = None,
    fasta_file: Optional[str] = None,
    oracle: Optional[DemarcationOracle] = None,
    config_obj: Optional[config.PipelineConfig] = None,
) -> Dict[str, Any]:
    """
    Run the complete demarcation workflow.

    Pipeline Phases:
    1. Load the tree, alignment summary and outgroup
    2. Global binning
    3. Recursive demarcation against the oracle
    4. Tables and trees
    5. Figures and HTML report (non-critical)

    Parameters
    ----------
    tree_file : str
        Newick tree of the aligned sequences
    output_dir : str
        Directory for output files (will be created if it doesn't exist)
    parameters : ParameterSet
        Global estimate from hill climbing
    nu : int, optional
        Number of ingroup sequences (default: from the FASTA, else the tree)
    sequence_length : int, optional
        Usable alignment length (default: from the FASTA)
    fasta_file : str, optional
        Aligned FASTA; its first record is the outgroup unless configured
    oracle : DemarcationOracle, optional
        Oracle to consult (default: the Fortran solver located through the
        oracle configuration)
    config_obj : PipelineConfig, optional
        Custom configuration object (default: uses default configuration)

    Returns
    -------
    Dict[str, Any]
        Dictionary containing:
        - 'success': bool - Whether the run completed
        - 'output_dir': Path - Output directory path
        - 'n_ecotypes': int - Number of ecotypes
        - 'ecotypes': List[Ecotype] - The ecotypes in tree order
        - 'result': DemarcationResult - Full demarcation outcome
        - 'bins': List[BinLevel] - Global bin levels
        - 'oracle_calls': int - Number of solver invocations
        - 'files': Dict[str, Path] - Paths to output files
        - 'errors': List[str] - Any non-critical errors encountered

    Raises
    ------
    FileNotFoundError
        If the tree, FASTA or solver binary is missing
    ValueError
        If nu or sequence_length cannot be determined or are invalid
    OracleError
        If a solver call fails
    """
    results: Dict[str, Any] = {
        'success': False,
        'output_dir': Path(output_dir),
        'errors': [],
        'files': {},
    }
    start = time.time()

    try:
        # =====================================================================
        # Setup and Validation
        # =====================================================================

        tree_path = Path(tree_file)
        if not tree_path.exists():
            raise FileNotFoundError(f"Tree file not found: {tree_file}")

        cfg = config_obj or config.get_default_config()
        output_path = Path(output_dir)
        dirs = _setup_directories(output_path)
        run_name = utils.sanitize_filename(tree_path.stem)

        utils.setup_logging(log_level=cfg.log_level,
                            log_file=output_path / f"{run_name}_ecotyper.log")

        logger.info("=" * 80)
        logger.info(f"Ecotyper Demarcation - {run_name}")
        logger.info("=" * 80)
        logger.info(f"Tree: {tree_file}")
        logger.info(f"Output: {output_dir}")
        logger.info(f"Global parameters: npop={parameters.npop}, omega={parameters.omega}, "
                    f"sigma={parameters.sigma}, likelihood={parameters.likelihood}")

        for warning in config.validate_config(cfg):
            logger.warning(f"Configuration: {warning}")

        outputs = _output_files(output_path, run_name)
        planned = [path for key, path in outputs.items()
                   if key != 'html_report' or cfg.html_report]
        _check_overwrite(planned, cfg)

        # =====================================================================
        # Phase 1: Inputs
        # =====================================================================

        logger.info("PHASE 1: Loading inputs")
        summary = utils.summarize_alignment(fasta_file) if fasta_file else None
        tree = _load_tree_with_outgroup(tree_path, cfg.demarcation.outgroup,
                                        summary.outgroup if summary else None)

        if summary is not None:
            missing = set(tree.leaf_names()) - set(summary.identifiers)
            if missing:
                logger.warning(f"{len(missing)} tree leaves not in the alignment, "
                               f"e.g. {sorted(missing)[:5]}")

        if nu is None:
            nu = summary.nu if summary else len(tree.ingroup_names())
        if sequence_length is None:
            if summary is None:
                raise ValueError("sequence_length is required when no FASTA file is given")
            sequence_length = summary.sequence_length
        results['nu'] = nu
        results['sequence_length'] = sequence_length
        logger.info(f"  nu={nu}, sequence length={sequence_length}")

        # =====================================================================
        # Phase 2: Global Binning
        # =====================================================================

        logger.info("PHASE 2: Global binning")
        levels = compute_bins(tree, cfg.binning.thresholds)
        results['bins'] = levels
        results['files']['bins'] = reports.write_bin_levels(levels, outputs['bins'],
                                                            cfg.binning.compact)

        # =====================================================================
        # Phase 3: Demarcation
        # =====================================================================

        logger.info("PHASE 3: Demarcation")
        if oracle is None:
            binary = utils.find_oracle_binary(cfg.oracle.binary_path,
                                              cfg.oracle.binary_directory)
            oracle = FortranDemarcationOracle.from_config(
                replace(cfg.oracle, binary_path=binary), working_directory=dirs['work']
            )

        result = demarcate(tree, oracle, parameters, nu, sequence_length,
                           config=cfg.demarcation, thresholds=cfg.binning.thresholds)
        results['result'] = result
        results['ecotypes'] = result.ecotypes
        results['n_ecotypes'] = len(result.ecotypes)
        results['oracle_calls'] = result.oracle_calls

        # =====================================================================
        # Phase 4: Tables and Trees
        # =====================================================================

        logger.info("PHASE 4: Writing results")
        files = results['files']
        files['ecotypes'] = reports.write_ecotype_table(result, outputs['ecotypes'])
        files['ecotype_listing'] = reports.write_ecotype_listing(
            result, outputs['ecotype_listing'])
        files['demarcation_log'] = reports.write_demarcation_log(
            result, outputs['demarcation_log'])
        files['demarcated_tree'] = tree.save(outputs['demarcated_tree'])
        files['collapsed_tree'] = tree.save(outputs['collapsed_tree'], collapse=True)

        # =====================================================================
        # Phase 5: Figures and Report
        # =====================================================================

        images = []
        if cfg.make_plots:
            try:
                images.append(visualization.plot_bin_levels(
                    levels, dirs['figures'] / f"{run_name}_bins.png"))
                images.append(visualization.plot_demarcated_tree(
                    tree, result, dirs['figures'] / f"{run_name}_demarcated_tree.png"))
                files['figures'] = dirs['figures']
            except Exception as e:
                logger.warning(f"  Figure generation had errors: {e}")
                results['errors'].append(f"Figure errors: {e}")

        if cfg.html_report:
            try:
                files['html_report'] = reports.generate_html_report(
                    run_name, output_path, result, levels, parameters, nu,
                    sequence_length, images=images, version=__version__,
                )
            except Exception as e:
                logger.warning(f"  HTML report failed: {e}")
                results['errors'].append(f"HTML report failed: {e}")

        results['success'] = True

        logger.info("=" * 80)
        logger.info(f"Demarcation completed for {run_name} in "
                    f"{utils.format_elapsed_time(time.time() - start)}")
        logger.info(f"  Ecotypes: {results['n_ecotypes']}")
        logger.info(f"  Oracle calls: {results['oracle_calls']}")
        logger.info("=" * 80)

        return results

    except Exception as e:
        logger.error(f"Demarcation failed with error: {e}", exc_info=True)
        results['success'] = False
        results['errors'].append(str(e))
        raise
