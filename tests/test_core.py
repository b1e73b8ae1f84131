"""
Unit tests for core pipeline orchestration.

Tests cover:
- The binning workflow, from the tree and from the alignment
- The demarcation workflow with an in-process oracle
- The demarcation workflow driving the solver through its exchange files
- Input resolution (outgroup, nu, sequence length) and error handling
"""

import unittest
import shutil
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import patch

import matplotlib
matplotlib.use("Agg")
import pandas as pd

from ecotyper import core
from ecotyper.config import get_default_config
from ecotyper.oracle import DemarcationOracle, OracleResponse, ParameterSet
from ecotyper.tree import load_tree
from ecotyper.utils import setup_logging

SCENARIO_TREE = "(((A:0.01,B:0.01):0.10,(C:0.02,D:0.04):0.10):0.05,O:0.5);\n"

ALIGNMENT = """>O
TTTTGGGGCCCCAAAATT-T
>A
ACGTACGTACGTACGTAC-T
>B
ACGTACGTACGTACGTAA-T
>C
ACGAACGTACCTACGTAC-T
>D
ACGAACGTACCTACGAAC-T
"""

PARAMS = ParameterSet(npop=2, omega=1.2, sigma=10.0, likelihood=0.4)


class CherryOracle(DemarcationOracle):
    """Splits clades of four sequences and accepts anything smaller."""

    def __init__(self):
        self.calls = 0

    def evaluate(self, request):
        self.calls += 1
        npop = 2 if request.sample_size >= 4 else 1
        one = ParameterSet(1, request.omega, request.sigma, 0.0 if npop > 1 else 0.6)
        best = ParameterSet(npop, request.omega, request.sigma, 0.8)
        return OracleResponse(one=one, best=best)


class PipelineTestCase(unittest.TestCase):
    """Shared temporary inputs."""

    def setUp(self):
        self.tmpdir = Path(tempfile.mkdtemp())
        self.tree_file = self.tmpdir / "scenario.nwk"
        self.tree_file.write_text(SCENARIO_TREE)
        self.fasta_file = self.tmpdir / "scenario.fasta"
        self.fasta_file.write_text(ALIGNMENT)
        self.output_dir = self.tmpdir / "results"
        self.cfg = get_default_config().update(make_plots=False, html_report=False)

    def tearDown(self):
        setup_logging("WARNING")
        shutil.rmtree(self.tmpdir)


class TestRunBinning(PipelineTestCase):
    """Test the binning workflow."""

    def test_tree_binning(self):
        """Test global bins and the bins file."""
        results = core.run_binning(str(self.tree_file), str(self.output_dir),
                                   thresholds=[0.7, 0.97], fasta_file=str(self.fasta_file),
                                   config_obj=self.cfg)
        self.assertTrue(results['success'])
        self.assertEqual([level.cluster_count for level in results['bins']], [1, 3])
        self.assertIsNone(results['alignment_bins'])
        self.assertTrue(results['files']['bins'].exists())

    def test_alignment_binning(self):
        """Test binning the alignment's divergence matrix as well."""
        results = core.run_binning(str(self.tree_file), str(self.output_dir),
                                   fasta_file=str(self.fasta_file), from_alignment=True,
                                   config_obj=self.cfg)
        alignment_counts = [level.cluster_count for level in results['alignment_bins']]
        self.assertEqual(alignment_counts[-1], 4)
        self.assertEqual(alignment_counts, sorted(alignment_counts))
        self.assertTrue(results['files']['alignment_bins'].exists())

    def test_alignment_binning_requires_fasta(self):
        """Test that alignment binning without a FASTA raises."""
        with self.assertRaises(ValueError):
            core.run_binning(str(self.tree_file), str(self.output_dir),
                             outgroup="O", from_alignment=True, config_obj=self.cfg)

    def test_existing_alignment_bins_not_overwritten(self):
        """Test that an existing alignment bins file blocks a binning run."""
        self.output_dir.mkdir()
        existing = self.output_dir / 'scenario_alignment_bins.tsv'
        existing.write_text("kept\n")
        with self.assertRaises(FileExistsError):
            core.run_binning(str(self.tree_file), str(self.output_dir),
                             fasta_file=str(self.fasta_file), from_alignment=True,
                             config_obj=self.cfg)
        self.assertEqual(existing.read_text(), "kept\n")
        self.assertFalse((self.output_dir / 'scenario_bins.tsv').exists())

    def test_binning_plot(self):
        """Test that the bin level plot is drawn when enabled."""
        cfg = self.cfg.update(make_plots=True)
        results = core.run_binning(str(self.tree_file), str(self.output_dir),
                                   outgroup="O", config_obj=cfg)
        self.assertTrue(results['files']['bins_plot'].exists())
        self.assertEqual(results['errors'], [])


class TestRunDemarcation(PipelineTestCase):
    """Test the demarcation workflow."""

    def test_demarcation_outputs(self):
        """Test ecotypes and every output table and tree."""
        oracle = CherryOracle()
        results = core.run_demarcation(
            str(self.tree_file), str(self.output_dir), PARAMS,
            fasta_file=str(self.fasta_file), oracle=oracle, config_obj=self.cfg,
        )

        self.assertTrue(results['success'])
        self.assertEqual(results['n_ecotypes'], 2)
        self.assertEqual([e.members for e in results['ecotypes']], [("A", "B"), ("C", "D")])
        self.assertEqual(results['nu'], 4)
        self.assertEqual(results['sequence_length'], 19)
        self.assertEqual(results['oracle_calls'], oracle.calls)

        files = results['files']
        for key in ('bins', 'ecotypes', 'ecotype_listing', 'demarcation_log',
                    'demarcated_tree', 'collapsed_tree'):
            self.assertTrue(files[key].exists(), key)
        self.assertNotIn('html_report', files)

        table = pd.read_csv(files['ecotypes'])
        self.assertEqual(table['sequence'].tolist(), ["A", "B", "C", "D"])
        collapsed = load_tree(files['collapsed_tree'])
        self.assertEqual(collapsed.leaf_names(), ["Ecotype1", "Ecotype2", "O"])
        demarcated = load_tree(files['demarcated_tree'])
        self.assertEqual(demarcated.leaf_names(), ["A", "B", "C", "D", "O"])

    def test_figures_and_report(self):
        """Test that figures and the HTML report are written when enabled."""
        cfg = self.cfg.update(make_plots=True, html_report=True)
        results = core.run_demarcation(
            str(self.tree_file), str(self.output_dir), PARAMS,
            fasta_file=str(self.fasta_file), oracle=CherryOracle(), config_obj=cfg,
        )
        self.assertEqual(results['errors'], [])
        self.assertTrue(results['files']['html_report'].exists())
        figures = list((self.output_dir / 'figures').glob('*.png'))
        self.assertEqual(len(figures), 2)

    def test_without_fasta(self):
        """Test explicit nu, sequence length and outgroup."""
        cfg = self.cfg.update(demarcation__outgroup="O")
        results = core.run_demarcation(
            str(self.tree_file), str(self.output_dir), PARAMS,
            sequence_length=500, oracle=CherryOracle(), config_obj=cfg,
        )
        self.assertEqual(results['nu'], 4)
        self.assertEqual(results['sequence_length'], 500)

    def test_sequence_length_required_without_fasta(self):
        """Test that the sequence length cannot be guessed without a FASTA."""
        with self.assertRaises(ValueError):
            core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                                 oracle=CherryOracle(), config_obj=self.cfg)

    def test_missing_tree(self):
        """Test that a missing tree raises FileNotFoundError."""
        with self.assertRaises(FileNotFoundError):
            core.run_demarcation(str(self.tmpdir / "missing.nwk"), str(self.output_dir),
                                 PARAMS, sequence_length=500, oracle=CherryOracle())

    def test_unknown_outgroup(self):
        """Test that an outgroup missing from the tree raises ValueError."""
        cfg = self.cfg.update(demarcation__outgroup="Z")
        with self.assertRaises(ValueError):
            core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                                 sequence_length=500, oracle=CherryOracle(), config_obj=cfg)

    def test_existing_outputs_not_overwritten(self):
        """Test that a second run refuses to overwrite unless allowed."""
        core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                             fasta_file=str(self.fasta_file), oracle=CherryOracle(),
                             config_obj=self.cfg)
        with self.assertRaises(FileExistsError):
            core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                                 fasta_file=str(self.fasta_file), oracle=CherryOracle(),
                                 config_obj=self.cfg)

        results = core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                                       fasta_file=str(self.fasta_file), oracle=CherryOracle(),
                                       config_obj=self.cfg.update(overwrite_existing=True))
        self.assertTrue(results['success'])

    def test_every_output_guarded(self):
        """Test that any existing output blocks the run before the solver is called."""
        core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                             fasta_file=str(self.fasta_file), oracle=CherryOracle(),
                             config_obj=self.cfg)
        (self.output_dir / 'scenario_bins.tsv').unlink()
        ecotypes_file = self.output_dir / 'scenario_ecotypes.csv'
        before = ecotypes_file.read_text()

        oracle = CherryOracle()
        with self.assertRaises(FileExistsError):
            core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                                 fasta_file=str(self.fasta_file), oracle=oracle,
                                 config_obj=self.cfg)
        self.assertEqual(oracle.calls, 0)
        self.assertFalse((self.output_dir / 'scenario_bins.tsv').exists())
        self.assertEqual(ecotypes_file.read_text(), before)

    def test_missing_solver_binary(self):
        """Test that no oracle and no binary raises FileNotFoundError."""
        cfg = self.cfg.update(oracle__binary_path=self.tmpdir / "absent")
        with self.assertRaises(FileNotFoundError):
            core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                                 fasta_file=str(self.fasta_file), config_obj=cfg)

    def test_solver_exchange_files(self):
        """Test driving the solver binary through request and response files."""
        binary = self.tmpdir / "demarcation.amd64"
        binary.write_text("#!/bin/sh\n")
        cfg = self.cfg.update(oracle__binary_path=binary)

        def fake_solver(cmd, **kwargs):
            Path(cmd[2]).write_text("npop 1 likelihood 0.5\nnpop 1 likelihood 0.5\n")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        with patch('ecotyper.oracle.subprocess.run', side_effect=fake_solver) as mock_run:
            results = core.run_demarcation(str(self.tree_file), str(self.output_dir), PARAMS,
                                           fasta_file=str(self.fasta_file), config_obj=cfg)

        self.assertEqual(mock_run.call_count, 1)
        self.assertEqual(results['n_ecotypes'], 1)
        request = self.output_dir / 'work' / 'demarcationIn-1.dat'
        self.assertTrue(request.exists())
        self.assertIn("19".ljust(20) + " lengthseq", request.read_text())


if __name__ == '__main__':
    unittest.main()
