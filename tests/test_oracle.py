"""
Unit tests for the oracle adapter.

Tests cover:
- Parameter set validation and ordering
- Request validation and the fixed-column request layout
- Response parsing and malformed responses
- Seed generation and platform binary suffixes
- The file-exchange oracle with a mocked solver process
"""

import unittest
import random
import shutil
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import patch

from ecotyper.binning import BinLevel
from ecotyper.config import OracleConfig
from ecotyper.oracle import (
    SEED_LIMIT,
    FortranDemarcationOracle,
    OracleInvocationError,
    OracleRequest,
    OracleTimeoutError,
    ParameterSet,
    binary_extension,
    format_request,
    make_random_seed,
    parse_response,
)

RESPONSE_TEXT = "npop 1 likelihood 0.0125\nnpop 3 likelihood 0.2500\n"


def make_request(**overrides):
    values = dict(
        bins=(BinLevel(0.9, 2), BinLevel(1.0, 3)),
        omega=1.2,
        sigma=10.0,
        npop=2,
        sample_size=4,
        sequence_length=1200,
        likelihood=0.4,
        iteration=7,
        seed=12345,
    )
    values.update(overrides)
    return OracleRequest(**values)


class TestParameterSet(unittest.TestCase):
    """Test ParameterSet values."""

    def test_valid(self):
        """Test a valid parameter set."""
        params = ParameterSet(npop=3, omega=1.5, sigma=20.0, likelihood=0.3)
        self.assertEqual(params.npop, 3)

    def test_invalid_values(self):
        """Test that npop, omega and sigma are validated."""
        with self.assertRaises(ValueError):
            ParameterSet(npop=0, omega=1.0, sigma=1.0, likelihood=0.1)
        with self.assertRaises(ValueError):
            ParameterSet(npop=1, omega=0.0, sigma=1.0, likelihood=0.1)
        with self.assertRaises(ValueError):
            ParameterSet(npop=1, omega=1.0, sigma=-2.0, likelihood=0.1)

    def test_ordered_by_likelihood(self):
        """Test that max() picks the most likely candidate."""
        low = ParameterSet(npop=5, omega=1.0, sigma=1.0, likelihood=0.1)
        high = ParameterSet(npop=2, omega=1.0, sigma=1.0, likelihood=0.6)
        self.assertIs(max([low, high]), high)
        self.assertTrue(low < high)

    def test_str(self):
        """Test the multi-line rendering."""
        params = ParameterSet(npop=3, omega=1.5, sigma=20.0, likelihood=0.3)
        self.assertIn("npop:        3", str(params))
        self.assertIn("omega:       1.5000", str(params))


class TestOracleRequest(unittest.TestCase):
    """Test request validation and layout."""

    def test_request_validation(self):
        """Test that invalid requests are rejected."""
        with self.assertRaises(ValueError):
            make_request(npop=0)
        with self.assertRaises(ValueError):
            make_request(sample_size=0)
        with self.assertRaises(ValueError):
            make_request(criterion=7)
        with self.assertRaises(ValueError):
            make_request(seed=12346)
        with self.assertRaises(ValueError):
            make_request(seed=SEED_LIMIT + 1)

    def test_bins_become_tuple(self):
        """Test that bins are frozen into a tuple."""
        request = make_request(bins=[BinLevel(0.9, 2)])
        self.assertIsInstance(request.bins, tuple)

    def test_format_request_layout(self):
        """Test the exact fixed-column layout."""
        lines = format_request(make_request()).splitlines()
        self.assertEqual(len(lines), 13)
        self.assertEqual(lines[0], "2" + " " * 19 + " numcrit")
        self.assertEqual(lines[1], "0.900000" + " " * 12 + " " + "2" + " " * 19)
        self.assertEqual(lines[2], "1.000000" + " " * 12 + " " + "3" + " " * 19)
        self.assertEqual(lines[3], "1.20000" + " " * 13 + " omega")
        self.assertEqual(lines[4], "10.00000" + " " * 12 + " sigma")
        self.assertEqual(lines[5], "2" + " " * 19 + " npop")
        self.assertEqual(lines[6], "1" + " " * 19 + " step")
        self.assertEqual(lines[7], "4" + " " * 19 + " nu")
        self.assertEqual(lines[8], "1000" + " " * 16 + " nrep")
        self.assertEqual(lines[9], "12345" + " " * 15 + " iii (random number seed)")
        self.assertEqual(lines[10], "1200" + " " * 16 + " lengthseq (after deleting gaps, etc.)")
        self.assertEqual(lines[11], "3" + " " * 19 + " whichavg")
        self.assertEqual(lines[12], "0.40000" + " " * 13 + " likelihoodsolution")

    def test_format_request_ends_with_newline(self):
        """Test that every line is newline-terminated."""
        self.assertTrue(format_request(make_request()).endswith("\n"))


class TestParseResponse(unittest.TestCase):
    """Test parsing the solver's response."""

    def test_parse_two_candidates(self):
        """Test the npop = 1 candidate comes first, the best second."""
        response = parse_response(RESPONSE_TEXT, omega=1.2, sigma=10.0)
        self.assertEqual(response.one.npop, 1)
        self.assertAlmostEqual(response.one.likelihood, 0.0125)
        self.assertEqual(response.best.npop, 3)
        self.assertAlmostEqual(response.best.likelihood, 0.25)
        self.assertEqual(response.best.omega, 1.2)
        self.assertEqual(response.best.sigma, 10.0)

    def test_blank_lines_ignored(self):
        """Test that blank lines do not count as candidates."""
        response = parse_response("\n" + RESPONSE_TEXT + "\n\n", omega=1.2, sigma=10.0)
        self.assertEqual(response.best.npop, 3)

    def test_wrong_number_of_lines(self):
        """Test that one or three candidates are rejected."""
        with self.assertRaises(OracleInvocationError):
            parse_response("npop 1 likelihood 0.1\n", omega=1.0, sigma=1.0)
        with self.assertRaises(OracleInvocationError):
            parse_response(RESPONSE_TEXT + "npop 2 likelihood 0.1\n", omega=1.0, sigma=1.0)
        with self.assertRaises(OracleInvocationError):
            parse_response("", omega=1.0, sigma=1.0)

    def test_malformed_line(self):
        """Test that unexpected fields are rejected."""
        with self.assertRaises(OracleInvocationError) as cm:
            parse_response("npop x likelihood 0.1\nnpop 2 likelihood 0.3\n",
                           omega=1.0, sigma=1.0)
        self.assertIn("line 1", str(cm.exception))
        with self.assertRaises(OracleInvocationError):
            parse_response("population 1 likelihood 0.1\nnpop 2 likelihood 0.3\n",
                           omega=1.0, sigma=1.0)

    def test_invalid_npop(self):
        """Test that npop 0 in a response is rejected."""
        with self.assertRaises(OracleInvocationError):
            parse_response("npop 0 likelihood 0.1\nnpop 2 likelihood 0.3\n",
                           omega=1.0, sigma=1.0)


class TestHelpers(unittest.TestCase):
    """Test seed generation and binary suffixes."""

    def test_random_seeds_are_odd_and_small(self):
        """Test many generated seeds."""
        rng = random.Random(0)
        for _ in range(500):
            seed = make_random_seed(rng)
            self.assertEqual(seed % 2, 1)
            self.assertLess(seed, SEED_LIMIT)
            self.assertGreater(seed, 0)

    def test_seeds_reproducible(self):
        """Test that a seeded generator gives the same seeds."""
        first = [make_random_seed(random.Random(42)) for _ in range(3)]
        second = [make_random_seed(random.Random(42)) for _ in range(3)]
        self.assertEqual(first, second)

    def test_binary_extension(self):
        """Test the suffix for each supported platform."""
        self.assertEqual(binary_extension("Windows", "AMD64"), ".exe")
        self.assertEqual(binary_extension("Linux", "x86_64"), ".amd64")
        self.assertEqual(binary_extension("Linux", "i686"), ".i386")
        self.assertEqual(binary_extension("Darwin", "arm64"), ".app")

    def test_binary_extension_unsupported(self):
        """Test that unknown platforms give no suffix."""
        self.assertEqual(binary_extension("Linux", "aarch64"), "")
        self.assertEqual(binary_extension("SunOS", "sparc"), "")


class TestFortranDemarcationOracle(unittest.TestCase):
    """Test the file-exchange oracle."""

    def setUp(self):
        """Create a fake binary and a working directory."""
        self.tmpdir = Path(tempfile.mkdtemp())
        self.binary = self.tmpdir / "demarcation.amd64"
        self.binary.write_text("#!/bin/sh\n")
        self.workdir = self.tmpdir / "work"
        self.oracle = FortranDemarcationOracle(
            binary_path=self.binary, working_directory=self.workdir, timeout=5
        )

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def fake_solver(self, text=RESPONSE_TEXT):
        def run(cmd, **kwargs):
            Path(cmd[2]).write_text(text)
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        return run

    def test_binary_path_from_directory(self):
        """Test that the binary name carries the platform suffix."""
        with patch('ecotyper.oracle.binary_extension', return_value='.amd64'):
            oracle = FortranDemarcationOracle(binary_directory=self.tmpdir)
        self.assertEqual(oracle.binary_path, self.tmpdir / "demarcation.amd64")

    def test_from_config(self):
        """Test building an oracle from OracleConfig."""
        oracle_config = OracleConfig(binary_path=self.binary, timeout_seconds=60,
                                     n_threads=2, keep_files=False)
        oracle = FortranDemarcationOracle.from_config(oracle_config, working_directory=self.workdir)
        self.assertEqual(oracle.binary_path, self.binary)
        self.assertEqual(oracle.working_directory, self.workdir)
        self.assertEqual(oracle.timeout, 60)
        self.assertEqual(oracle.n_threads, 2)
        self.assertFalse(oracle.keep_files)

    def test_exchange_file_names(self):
        """Test the request and response file names."""
        request_path, response_path = self.oracle.exchange_files(12)
        self.assertEqual(request_path.name, "demarcationIn-12.dat")
        self.assertEqual(response_path.name, "demarcationOut-12.dat")

    def test_evaluate_success(self):
        """Test a successful call writes the request and reads the response."""
        with patch('ecotyper.oracle.subprocess.run', side_effect=self.fake_solver()) as mock_run:
            response = self.oracle.evaluate(make_request())

        self.assertEqual(response.best.npop, 3)
        cmd = mock_run.call_args[0][0]
        self.assertEqual(cmd[0], str(self.binary))
        self.assertTrue(cmd[1].endswith("demarcationIn-7.dat"))
        self.assertTrue(cmd[2].endswith("demarcationOut-7.dat"))
        self.assertEqual(cmd[3:], ["1", "false"])
        self.assertEqual(mock_run.call_args[1]["timeout"], 5)
        request_text = (self.workdir / "demarcationIn-7.dat").read_text()
        self.assertEqual(request_text, format_request(make_request()))

    def test_debug_and_threads_flags(self):
        """Test the thread count and debug flag in the command."""
        oracle = FortranDemarcationOracle(binary_path=self.binary, working_directory=self.workdir,
                                          n_threads=4, debug=True)
        with patch('ecotyper.oracle.subprocess.run', side_effect=self.fake_solver()) as mock_run:
            oracle.evaluate(make_request())
        self.assertEqual(mock_run.call_args[0][0][3:], ["4", "true"])

    def test_exchange_files_removed_when_not_kept(self):
        """Test cleanup of exchange files."""
        self.oracle.keep_files = False
        with patch('ecotyper.oracle.subprocess.run', side_effect=self.fake_solver()):
            self.oracle.evaluate(make_request())
        self.assertEqual(list(self.workdir.iterdir()), [])

    def test_stale_response_is_removed(self):
        """Test that a leftover response file is not read."""
        self.workdir.mkdir()
        (self.workdir / "demarcationOut-7.dat").write_text(RESPONSE_TEXT)

        def run(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        with patch('ecotyper.oracle.subprocess.run', side_effect=run):
            with self.assertRaises(OracleInvocationError):
                self.oracle.evaluate(make_request())

    def test_missing_binary(self):
        """Test that a missing binary raises before running anything."""
        oracle = FortranDemarcationOracle(binary_path=self.tmpdir / "absent",
                                          working_directory=self.workdir)
        with patch('ecotyper.oracle.subprocess.run') as mock_run:
            with self.assertRaises(OracleInvocationError):
                oracle.evaluate(make_request())
        mock_run.assert_not_called()

    def test_non_zero_exit(self):
        """Test that a failing solver raises OracleInvocationError."""
        error = subprocess.CalledProcessError(2, ["demarcation"], stderr="segfault")
        with patch('ecotyper.oracle.subprocess.run', side_effect=error):
            with self.assertRaises(OracleInvocationError) as cm:
                self.oracle.evaluate(make_request())
        self.assertIn("exit status 2", str(cm.exception))
        self.assertIs(cm.exception.__cause__, error)

    def test_timeout(self):
        """Test that a slow solver raises OracleTimeoutError."""
        error = subprocess.TimeoutExpired(["demarcation"], 5)
        with patch('ecotyper.oracle.subprocess.run', side_effect=error):
            with self.assertRaises(OracleTimeoutError):
                self.oracle.evaluate(make_request())

    def test_os_error(self):
        """Test that an unrunnable binary raises OracleInvocationError."""
        with patch('ecotyper.oracle.subprocess.run', side_effect=PermissionError("denied")):
            with self.assertRaises(OracleInvocationError):
                self.oracle.evaluate(make_request())

    def test_malformed_response(self):
        """Test that a garbled response file raises."""
        with patch('ecotyper.oracle.subprocess.run',
                   side_effect=self.fake_solver("garbage\n")):
            with self.assertRaises(OracleInvocationError):
                self.oracle.evaluate(make_request())


if __name__ == '__main__':
    unittest.main()
