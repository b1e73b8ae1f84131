#!/usr/bin/env python3
"""
Ecotyper Command-Line Interface

Subcommands:
  bins              count complete-linkage bins of a tree at every threshold
  demarcate         partition the sequences of a tree into ecotypes
  config-template   write a configuration file holding all defaults
"""

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

# Local imports
from . import __version__
from . import utils, config, core
from .binning import format_bin_levels
from .oracle import ParameterSet

logger = logging.getLogger(__name__)


def _parse_thresholds(text: str) -> List[float]:
    try:
        return [float(item) for item in text.split(',') if item.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Thresholds must be comma separated numbers, got {text!r}"
        ) from None


def _load_config(args: argparse.Namespace) -> config.PipelineConfig:
    """Defaults, then the config file, then environment, then flags."""
    cfg = (config.load_config_from_file(args.config) if args.config
           else config.get_default_config())
    env_overrides = config.load_config_from_env()
    if env_overrides:
        cfg = cfg.update(**env_overrides)

    updates = {}
    if getattr(args, 'log_level', None):
        updates['log_level'] = args.log_level
    if getattr(args, 'thresholds', None):
        updates['binning__thresholds'] = tuple(args.thresholds)
    if getattr(args, 'outgroup', None):
        updates['demarcation__outgroup'] = args.outgroup
    if getattr(args, 'no_plots', False):
        updates['make_plots'] = False
    if getattr(args, 'overwrite', False):
        updates['overwrite_existing'] = True
    if getattr(args, 'precision', None):
        updates['demarcation__precision'] = args.precision
    if getattr(args, 'threads', None):
        updates['demarcation__n_threads'] = args.threads
    if getattr(args, 'binary_dir', None):
        updates['oracle__binary_directory'] = args.binary_dir
    if getattr(args, 'timeout', None):
        updates['oracle__timeout_seconds'] = args.timeout
    if getattr(args, 'no_report', False):
        updates['html_report'] = False
    return cfg.update(**updates)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ecotyper',
        description='Ecotyper: ecotype demarcation from bacterial phylogenies',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Bin a tree, the first FASTA record is the outgroup
  ecotyper bins sequences.nwk --fasta sequences.fasta -o results/

  # Demarcate with the hill-climbing estimate
  ecotyper demarcate sequences.nwk --fasta sequences.fasta \\
      --npop 5 --omega 1.2 --sigma 10.0 --likelihood 0.4 -o results/

  # Coarse-scale demarcation with 4 concurrent solver calls
  ecotyper demarcate sequences.nwk --fasta sequences.fasta --precision coarse \\
      --threads 4 --npop 5 --omega 1.2 --sigma 10.0 --likelihood 0.4
        """
    )
    parser.add_argument('--version', action='version', version=f'Ecotyper {__version__}')

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('tree', type=Path, help='Newick tree of the aligned sequences')
    common.add_argument('--fasta', type=Path, default=None,
                        help='Aligned FASTA; its first record is the outgroup')
    common.add_argument('--outgroup', type=str, default=None,
                        help='Outgroup name (default: first FASTA record, else first leaf)')
    common.add_argument('-o', '--output', type=Path, default=Path('results'),
                        help='Output directory (default: results)')
    common.add_argument('--thresholds', type=_parse_thresholds, default=None,
                        help='Comma separated identity thresholds (default: 0.60 ... 1.00)')
    common.add_argument('--config', type=Path, default=None,
                        help='YAML or JSON configuration file')
    common.add_argument('--no-plots', action='store_true', help='Skip figures')
    common.add_argument('--overwrite', action='store_true',
                        help='Overwrite existing output files')
    common.add_argument('--log-level', default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: from the configuration, else INFO)')

    subparsers = parser.add_subparsers(dest='command')

    bins = subparsers.add_parser('bins', parents=[common],
                                 help='Count bins of a tree at every threshold')
    bins.add_argument('--from-alignment', action='store_true',
                      help='Also bin the divergence matrix of the FASTA alignment')

    demarcate = subparsers.add_parser('demarcate', parents=[common],
                                      help='Partition sequences into ecotypes')
    demarcate.add_argument('--npop', type=int, required=True, help='Global npop estimate')
    demarcate.add_argument('--omega', type=float, required=True, help='Global omega estimate')
    demarcate.add_argument('--sigma', type=float, required=True, help='Global sigma estimate')
    demarcate.add_argument('--likelihood', type=float, required=True,
                           help='Likelihood of the global estimate')
    demarcate.add_argument('--nu', type=int, default=None,
                           help='Number of ingroup sequences (default: from FASTA or tree)')
    demarcate.add_argument('--length', type=int, default=None, dest='sequence_length',
                           help='Usable sequence length (default: from FASTA)')
    demarcate.add_argument('--precision', choices=['fine', 'coarse'], default=None,
                           help='Demarcation precision (default: fine)')
    demarcate.add_argument('--threads', type=int, default=None,
                           help='Concurrent solver calls (default: 1)')
    demarcate.add_argument('--binary-dir', type=Path, default=None,
                           help='Directory holding the demarcation solver')
    demarcate.add_argument('--timeout', type=float, default=None,
                           help='Seconds allowed per solver call (default: 3600)')
    demarcate.add_argument('--no-report', action='store_true',
                           help='Skip HTML report generation')

    template = subparsers.add_parser('config-template',
                                     help='Write a configuration file with all defaults')
    template.add_argument('path', type=Path, help='Output path (.yaml or .json)')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == 'config-template':
        fmt = 'json' if args.path.suffix.lower() == '.json' else 'yaml'
        config.create_config_template(args.path, format=fmt)
        print(f"Configuration template written to {args.path}")
        return 0

    if not args.tree.exists():
        print(f"Error: Tree file not found: {args.tree}", file=sys.stderr)
        return 1

    try:
        cfg = _load_config(args)
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return 1

    utils.setup_logging(log_level=cfg.log_level)

    try:
        if args.command == 'bins':
            results = core.run_binning(
                tree_file=str(args.tree),
                output_dir=str(args.output),
                fasta_file=str(args.fasta) if args.fasta else None,
                from_alignment=args.from_alignment,
                config_obj=cfg,
            )
            print(format_bin_levels(results['bins']))
            return 0 if results['success'] else 1

        parameters = ParameterSet(
            npop=args.npop, omega=args.omega, sigma=args.sigma,
            likelihood=args.likelihood,
        )
        results = core.run_demarcation(
            tree_file=str(args.tree),
            output_dir=str(args.output),
            parameters=parameters,
            nu=args.nu,
            sequence_length=args.sequence_length,
            fasta_file=str(args.fasta) if args.fasta else None,
            config_obj=cfg,
        )
        print(results['result'], end='')
        return 0 if results['success'] else 1

    except KeyboardInterrupt:
        print("\n\nInterrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error(f"{args.command} failed with error: {e}")
        print(f"\nError: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
