"""
Helper Functions and Utilities

This module provides common utility functions used throughout the Ecotyper
package, including logging configuration, solver binary discovery, file
handling and alignment summaries.

Key Utilities:
1. Logging Configuration
   - Centralized logging setup for the ecotyper package logger
   - Console output with optional log file

2. External Tool Management
   - Locate the demarcation solver binary (explicit path, binary
     directory, ECOTYPER_BINARY_DIR, or PATH)
   - Helpful error messages when it is missing

3. File Operations
   - Automatic directory creation
   - Filename sanitization for ecotype labels

4. Alignment Helpers
   - Read the aligned FASTA with Biopython to obtain the sequence count
     (nu), the outgroup (first record) and the usable sequence length
   - Pairwise divergence matrix for matrix-based binning

Example Usage:
    >>> from ecotyper.utils import setup_logging, summarize_alignment
    >>> setup_logging("DEBUG", log_file="results/ecotyper.log")
    >>> summary = summarize_alignment("sequences.fasta")
    >>> summary.outgroup, summary.nu
    ('outgroup_seq', 40)
"""

from dataclasses import dataclass
from typing import Optional, List, Tuple, Union
from pathlib import Path
import logging
import os
import re
import shutil
import sys

import numpy as np
from Bio import SeqIO

from .oracle import binary_extension

# Configure module logger
logger = logging.getLogger(__name__)

# Characters treated as alignment gaps
GAP_CHARACTERS = "-.?"


# ============================================================================
# Logging Configuration
# ============================================================================

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for Ecotyper.

    Sets up the package logger with console and optional file output.

    Parameters
    ----------
    log_level : str, optional
        Logging level: DEBUG, INFO, WARNING, ERROR, or CRITICAL (default: INFO)
    log_file : Union[str, Path], optional
        Path to log file. If None, logs only to console (default: None)
    format_string : str, optional
        Custom format string for log messages. If None, uses default format

    Returns
    -------
    logging.Logger
        Configured logger instance

    Notes
    -----
    The default format includes timestamp, level, and message:
    [2026-10-18 10:30:45] INFO: Demarcating 40 sequences
    """
    package_logger = logging.getLogger("ecotyper")
    package_logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    for handler in package_logger.handlers:
        handler.close()
    package_logger.handlers.clear()

    if format_string is None:
        format_string = "[%(asctime)s] %(levelname)s: %(message)s"

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

        package_logger.info(f"Logging to file: {log_path}")

    return package_logger


# ============================================================================
# External Tool Management
# ============================================================================

def check_external_tool(tool: Union[str, Path]) -> bool:
    """
    Check if an external program is available.

    Parameters
    ----------
    tool : Union[str, Path]
        Program name to look up in PATH, or a path to an executable

    Returns
    -------
    bool
        True if the program exists and is executable
    """
    path = Path(tool)
    if path.parent != Path('.') or path.is_file():
        available = path.is_file() and os.access(path, os.X_OK)
        location = str(path)
    else:
        location = shutil.which(str(tool))
        available = location is not None

    if available:
        logger.debug(f"Found {tool} at: {location}")
    else:
        logger.warning(f"Tool '{tool}' not found or not executable")
    return available


def find_oracle_binary(
    binary_path: Optional[Union[str, Path]] = None,
    binary_directory: Optional[Union[str, Path]] = None,
) -> Path:
    """
    Locate the demarcation solver binary.

    Search order: explicit binary_path, binary_directory, the directory in
    the ECOTYPER_BINARY_DIR environment variable, then PATH (both with and
    without the platform suffix).

    Returns
    -------
    Path
        Path to the binary

    Raises
    ------
    FileNotFoundError
        If no binary is found, with a hint on how to point at one
    """
    if binary_path is not None:
        path = Path(binary_path)
        if not path.is_file():
            raise FileNotFoundError(f"Demarcation binary not found: {path}")
        return path

    name = f"demarcation{binary_extension()}"
    directories = [binary_directory, os.environ.get("ECOTYPER_BINARY_DIR")]
    for directory in directories:
        if directory:
            candidate = Path(directory) / name
            if candidate.is_file():
                logger.debug(f"Using demarcation binary {candidate}")
                return candidate

    for candidate_name in (name, "demarcation"):
        found = shutil.which(candidate_name)
        if found:
            logger.debug(f"Using demarcation binary {found}")
            return Path(found)

    raise FileNotFoundError(
        f"Demarcation binary '{name}' not found. Build the Ecotype Simulation "
        "Fortran programs and pass --binary-dir, set ECOTYPER_BINARY_DIR, "
        "or add the binary to PATH."
    )


# ============================================================================
# File I/O and Path Handling
# ============================================================================

def create_output_directory(output_dir: Union[str, Path]) -> Path:
    """
    Create output directory if it doesn't exist.

    Raises
    ------
    OSError
        If directory cannot be created due to permissions or other issues
    """
    path = Path(output_dir)

    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created/verified output directory: {path}")
        return path
    except OSError as e:
        logger.error(f"Failed to create directory {path}: {e}")
        raise


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename for cross-platform compatibility.

    Examples
    --------
    >>> sanitize_filename("Ecotype 12 (coarse)")
    'Ecotype_12_coarse'
    """
    safe = filename.replace(' ', '_')
    safe = re.sub(r'[^\w\-.]', '_', safe)
    safe = re.sub(r'_+', '_', safe)
    return safe.strip('_')


def format_elapsed_time(seconds: float) -> str:
    """
    Format elapsed time in human-readable format.

    Examples
    --------
    >>> format_elapsed_time(45)
    '45s'
    >>> format_elapsed_time(3661)
    '1h 1m'
    """
    if seconds < 60:
        return f"{seconds:.0f}s"

    minutes = seconds / 60
    if minutes < 60:
        return f"{minutes:.1f}m"

    hours = minutes / 60
    return f"{int(hours)}h {int(minutes % 60)}m"


# ============================================================================
# Alignment Helpers
# ============================================================================

@dataclass(frozen=True)
class AlignmentSummary:
    """
    What demarcation needs to know about the aligned sequences.

    Attributes
    ----------
    identifiers : Tuple[str, ...]
        Record identifiers in file order; the first is the outgroup
    nu : int
        Number of ingroup sequences (all records except the outgroup)
    sequence_length : int
        Alignment columns that are not gaps in every sequence
    """
    identifiers: Tuple[str, ...]
    nu: int
    sequence_length: int

    @property
    def outgroup(self) -> str:
        return self.identifiers[0]


def _read_alignment(fasta_path: Union[str, Path]) -> List:
    path = Path(fasta_path)
    if not path.exists():
        raise FileNotFoundError(f"FASTA file not found: {path}")

    records = list(SeqIO.parse(str(path), "fasta"))
    if not records:
        raise ValueError(f"No sequences found in FASTA file: {path}")

    lengths = {len(record.seq) for record in records}
    if len(lengths) > 1:
        raise ValueError(
            f"Sequences in {path} are not aligned (lengths {sorted(lengths)})"
        )
    return records


def _alignment_array(records: List) -> np.ndarray:
    return np.array([list(str(record.seq).upper()) for record in records], dtype='U1')


def summarize_alignment(fasta_path: Union[str, Path]) -> AlignmentSummary:
    """
    Summarize an aligned FASTA file.

    Parameters
    ----------
    fasta_path : Union[str, Path]
        Aligned FASTA; by convention the first record is the outgroup

    Returns
    -------
    AlignmentSummary
        Identifiers, ingroup size and usable sequence length

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    ValueError
        If the file holds no sequences or the sequences differ in length
    """
    records = _read_alignment(fasta_path)
    alignment = _alignment_array(records)
    gaps = np.isin(alignment, list(GAP_CHARACTERS))
    sequence_length = int((~gaps.all(axis=0)).sum())

    summary = AlignmentSummary(
        identifiers=tuple(record.id for record in records),
        nu=len(records) - 1,
        sequence_length=sequence_length,
    )
    logger.info(
        f"Alignment {fasta_path}: {len(records)} sequences, "
        f"{sequence_length} usable columns, outgroup {summary.outgroup}"
    )
    if summary.nu < 1:
        logger.warning("Alignment holds only the outgroup sequence")
    return summary


def alignment_divergence_matrix(
    fasta_path: Union[str, Path],
    include_outgroup: bool = False,
) -> Tuple[List[str], np.ndarray]:
    """
    Compute pairwise divergence (fraction of differing sites) between sequences.

    Sites where either sequence has a gap or an N are ignored for that pair.

    Parameters
    ----------
    fasta_path : Union[str, Path]
        Aligned FASTA file
    include_outgroup : bool, optional
        Keep the first record (default: False)

    Returns
    -------
    Tuple[List[str], np.ndarray]
        Sequence identifiers and the symmetric divergence matrix
    """
    records = _read_alignment(fasta_path)
    if not include_outgroup:
        records = records[1:]

    alignment = _alignment_array(records)
    valid = ~np.isin(alignment, list(GAP_CHARACTERS + "N"))
    n = len(records)
    matrix = np.zeros((n, n), dtype=float)
    for i in range(n):
        both = valid[i] & valid[i + 1:]
        differ = (alignment[i] != alignment[i + 1:]) & both
        compared = both.sum(axis=1)
        with np.errstate(divide='ignore', invalid='ignore'):
            row = np.where(compared > 0, differ.sum(axis=1) / compared, 0.0)
        matrix[i, i + 1:] = row
        matrix[i + 1:, i] = row
    return [record.id for record in records], matrix
