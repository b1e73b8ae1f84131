"""
Parameter-Likelihood Oracle Adapter

Demarcation asks an external numerical solver, for every candidate clade,
how likely the clade's binning pattern is under a single population
(npop = 1) versus the solver's own most likely number of populations. This
module defines that contract and the file-exchange implementation that
drives the legacy Fortran `demarcation` binary.

File Exchange:
1. A fixed-column request file is written (demarcationIn-<iteration>.dat):

       <numcrit>            numcrit
       <crit>               <level>          (one line per bin level)
       <omega>              omega
       <sigma>              sigma
       <npop>               npop
       <step>               step
       <nu>                 nu
       <nrep>               nrep
       <seed>               iii (random number seed)
       <length>             lengthseq (after deleting gaps, etc.)
       <whichavg>           whichavg
       <likelihood>         likelihoodsolution

   Every value is left-justified in a 20 character column; the solver reads
   the file positionally, so order and widths must not change.
2. The binary is run as `demarcation<ext> <in> <out> <threads> <debug>`.
3. The response file (demarcationOut-<iteration>.dat) holds two lines of the
   form `npop <value> likelihood <value>`: the npop = 1 candidate first and
   the most likely npop second.

Any failure (missing binary, non-zero exit, timeout, missing or malformed
response) raises an OracleError subclass. No value is ever defaulted.

Example Usage:
    >>> from ecotyper.oracle import FortranDemarcationOracle
    >>> oracle = FortranDemarcationOracle(
    ...     binary_directory="bin", working_directory="work", timeout=600
    ... )
    >>> response = oracle.evaluate(request)
    >>> response.best.npop
    3
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union
import logging
import platform
import random
import subprocess

from .binning import BinLevel

# Configure logging
logger = logging.getLogger(__name__)

# Seeds handed to the solver are odd and have fewer than nine digits
SEED_LIMIT = 10 ** 8


class OracleError(RuntimeError):
    """Base exception for oracle failures."""
    pass


class OracleInvocationError(OracleError):
    """The solver could not be run, failed, or produced an unusable response."""
    pass


class OracleTimeoutError(OracleError):
    """The solver did not finish within the allowed time."""
    pass


# ============================================================================
# Values Exchanged With The Solver
# ============================================================================

@dataclass(frozen=True)
class ParameterSet:
    """
    Population parameter estimate with its likelihood.

    Attributes
    ----------
    npop : int
        Number of populations (ecotypes), at least 1
    omega : float
        Rate of ecotype formation, > 0
    sigma : float
        Rate of periodic selection, > 0
    likelihood : float
        Likelihood of the binning data under these parameters

    Notes
    -----
    Parameter sets order by likelihood, so max() of several candidates picks
    the most likely one.
    """
    npop: int
    omega: float
    sigma: float
    likelihood: float

    def __post_init__(self):
        if int(self.npop) != self.npop or self.npop < 1:
            raise ValueError(f"npop must be an integer >= 1, got {self.npop}")
        if not self.omega > 0:
            raise ValueError(f"omega must be > 0, got {self.omega}")
        if not self.sigma > 0:
            raise ValueError(f"sigma must be > 0, got {self.sigma}")

    def __lt__(self, other: "ParameterSet") -> bool:
        if not isinstance(other, ParameterSet):
            return NotImplemented
        return self.likelihood < other.likelihood

    def __str__(self) -> str:
        return (
            f"  npop:        {self.npop}\n"
            f"  omega:       {self.omega:.4f}\n"
            f"  sigma:       {self.sigma:.4f}\n"
            f"  likelihood:  {self.likelihood:.4f}"
        )


@dataclass(frozen=True)
class OracleRequest:
    """
    Everything the solver needs to evaluate one clade.

    Attributes
    ----------
    bins : Tuple[BinLevel, ...]
        Clade-local bin levels
    omega, sigma : float
        Global rate estimates
    npop : int
        Scaled npop estimate for the clade
    sample_size : int
        Number of ingroup sequences in the clade (nu)
    sequence_length : int
        Alignment length after removing gap-only columns
    likelihood : float
        Likelihood of the global solution
    iteration : int
        Tag used to name the exchange files
    seed : int
        Odd random number seed below 10**8
    step : int
        Solver step size (default: 1)
    replicates : int
        Number of simulation replicates (default: 1000)
    criterion : int
        Averaging criterion, 1..6 (default: 3)
    """
    bins: Tuple[BinLevel, ...]
    omega: float
    sigma: float
    npop: int
    sample_size: int
    sequence_length: int
    likelihood: float
    iteration: int
    seed: int
    step: int = 1
    replicates: int = 1000
    criterion: int = 3

    def __post_init__(self):
        object.__setattr__(self, 'bins', tuple(self.bins))
        if self.npop < 1:
            raise ValueError(f"npop must be >= 1, got {self.npop}")
        if self.sample_size < 1:
            raise ValueError(f"sample_size must be >= 1, got {self.sample_size}")
        if not 1 <= self.criterion <= 6:
            raise ValueError(f"criterion must be between 1 and 6, got {self.criterion}")
        if self.seed % 2 == 0 or not 0 < self.seed < SEED_LIMIT:
            raise ValueError(f"seed must be odd and below {SEED_LIMIT}, got {self.seed}")


@dataclass(frozen=True)
class OracleResponse:
    """
    The two candidates the solver reports for one clade.

    Attributes
    ----------
    one : ParameterSet
        Candidate constrained to npop = 1
    best : ParameterSet
        Candidate at the solver's most likely npop
    """
    one: ParameterSet
    best: ParameterSet


def make_random_seed(rng: Optional[random.Random] = None) -> int:
    """Draw an odd seed with fewer than nine digits."""
    rng = rng or random
    seed = rng.randrange(SEED_LIMIT)
    if seed % 2 == 0:
        seed += 1
    return seed


# ============================================================================
# Request And Response Files
# ============================================================================

def format_request(request: OracleRequest) -> str:
    """
    Render a request in the solver's fixed-column layout.

    Returns
    -------
    str
        File contents, one newline-terminated line per field
    """
    lines = [f"{len(request.bins):<20d} numcrit"]
    for level in request.bins:
        lines.append(f"{level.threshold:<20.6f} {level.cluster_count:<20d}")
    lines.extend([
        f"{request.omega:<20.5f} omega",
        f"{request.sigma:<20.5f} sigma",
        f"{request.npop:<20d} npop",
        f"{request.step:<20d} step",
        f"{request.sample_size:<20d} nu",
        f"{request.replicates:<20d} nrep",
        f"{request.seed:<20d} iii (random number seed)",
        f"{request.sequence_length:<20d} lengthseq (after deleting gaps, etc.)",
        f"{request.criterion:<20d} whichavg",
        f"{request.likelihood:<20.5f} likelihoodsolution",
    ])
    return "\n".join(lines) + "\n"


def write_request_file(request: OracleRequest, input_path: Union[str, Path]) -> Path:
    """Write a request file and return its path."""
    path = Path(input_path)
    try:
        with open(path, 'w') as fh:
            fh.write(format_request(request))
    except OSError as e:
        error_msg = f"Failed to write oracle request {path}: {e}"
        logger.error(error_msg)
        raise OracleInvocationError(error_msg) from e
    return path


def parse_response(text: str, omega: float, sigma: float,
                   source: str = "<response>") -> OracleResponse:
    """
    Parse the solver's two-line response.

    Parameters
    ----------
    text : str
        Response contents
    omega, sigma : float
        Rates carried into both candidates (the solver only reports npop and
        likelihood)
    source : str, optional
        Name of the response for error messages

    Returns
    -------
    OracleResponse
        The npop = 1 candidate and the most likely candidate

    Raises
    ------
    OracleInvocationError
        If the text does not hold exactly two well-formed candidate lines
    """
    candidates = []
    for line_number, line in enumerate(text.splitlines(), 1):
        fields = line.split()
        if not fields:
            continue
        if len(fields) != 4 or fields[0] != "npop" or fields[2] != "likelihood":
            raise OracleInvocationError(
                f"Malformed oracle response in {source}, line {line_number}: {line.strip()!r}"
            )
        try:
            candidates.append(ParameterSet(
                npop=int(fields[1]),
                omega=omega,
                sigma=sigma,
                likelihood=float(fields[3]),
            ))
        except ValueError as e:
            raise OracleInvocationError(
                f"Invalid value in oracle response {source}, line {line_number}: {e}"
            ) from e

    if len(candidates) != 2:
        raise OracleInvocationError(
            f"Oracle response {source} has {len(candidates)} candidate lines, expected 2"
        )
    return OracleResponse(one=candidates[0], best=candidates[1])


def read_response_file(output_path: Union[str, Path], omega: float,
                       sigma: float) -> OracleResponse:
    """Read and parse a response file (see parse_response)."""
    path = Path(output_path)
    if not path.is_file():
        raise OracleInvocationError(f"Oracle response file not found: {path}")
    with open(path, 'r') as fh:
        text = fh.read()
    return parse_response(text, omega, sigma, source=str(path))


# ============================================================================
# Oracle Implementations
# ============================================================================

class DemarcationOracle(ABC):
    """Interface for anything that can evaluate a clade."""

    @abstractmethod
    def evaluate(self, request: OracleRequest) -> OracleResponse:
        """
        Evaluate one clade.

        Implementations must be safe to call from several threads at once
        when the requests carry distinct iteration tags.

        Raises
        ------
        OracleError
            On any failure; implementations never return placeholder values
        """


def binary_extension(system: Optional[str] = None,
                     machine: Optional[str] = None) -> str:
    """
    Return the platform suffix of the bundled solver binaries.

    Parameters
    ----------
    system : str, optional
        Operating system name (default: platform.system())
    machine : str, optional
        Machine architecture (default: platform.machine())

    Returns
    -------
    str
        '.exe' on Windows, '.amd64' or '.i386' on Linux, '.app' on macOS,
        and '' for anything else
    """
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()

    if "windows" in system:
        return ".exe"
    if "linux" in system:
        if machine in ("x86_64", "amd64"):
            return ".amd64"
        if machine in ("i386", "i486", "i586", "i686", "x86"):
            return ".i386"
        logger.warning(f"No bundled solver binaries for architecture {machine}")
        return ""
    if "darwin" in system or "mac" in system:
        return ".app"
    logger.warning(f"No bundled solver binaries for operating system {system}")
    return ""


class FortranDemarcationOracle(DemarcationOracle):
    """
    Oracle backed by the legacy Fortran `demarcation` program.

    Parameters
    ----------
    binary_directory : Union[str, Path], optional
        Directory holding demarcation<ext> (default: current directory)
    binary_path : Union[str, Path], optional
        Explicit path to the binary; overrides binary_directory
    working_directory : Union[str, Path], optional
        Where exchange files are written (default: current directory)
    timeout : float, optional
        Seconds allowed per call; None waits indefinitely (default: 3600)
    n_threads : int, optional
        Thread count passed to the solver (default: 1)
    debug : bool, optional
        Pass the solver's debug flag and log its output (default: False)
    keep_files : bool, optional
        Keep exchange files after a successful call (default: True)
    """

    def __init__(self,
                 binary_directory: Optional[Union[str, Path]] = None,
                 binary_path: Optional[Union[str, Path]] = None,
                 working_directory: Optional[Union[str, Path]] = None,
                 timeout: Optional[float] = 3600,
                 n_threads: int = 1,
                 debug: bool = False,
                 keep_files: bool = True):
        if binary_path is not None:
            self.binary_path = Path(binary_path)
        else:
            directory = Path(binary_directory) if binary_directory else Path.cwd()
            self.binary_path = directory / f"demarcation{binary_extension()}"
        self.working_directory = Path(working_directory) if working_directory else Path.cwd()
        self.timeout = timeout
        self.n_threads = n_threads
        self.debug = debug
        self.keep_files = keep_files

    @classmethod
    def from_config(cls, oracle_config, working_directory: Optional[Union[str, Path]] = None):
        """Build an oracle from an OracleConfig."""
        return cls(
            binary_directory=oracle_config.binary_directory,
            binary_path=oracle_config.binary_path,
            working_directory=oracle_config.working_directory or working_directory,
            timeout=oracle_config.timeout_seconds,
            n_threads=oracle_config.n_threads,
            debug=oracle_config.debug,
            keep_files=oracle_config.keep_files,
        )

    def __repr__(self) -> str:
        return (f"FortranDemarcationOracle(binary_path={str(self.binary_path)!r}, "
                f"timeout={self.timeout})")

    def exchange_files(self, iteration: int) -> Tuple[Path, Path]:
        """Return the (request, response) file paths for an iteration."""
        return (
            self.working_directory / f"demarcationIn-{iteration}.dat",
            self.working_directory / f"demarcationOut-{iteration}.dat",
        )

    def build_command(self, input_path: Path, output_path: Path) -> Sequence[str]:
        return [
            str(self.binary_path),
            str(input_path.resolve()),
            str(output_path.resolve()),
            str(self.n_threads),
            "true" if self.debug else "false",
        ]

    def evaluate(self, request: OracleRequest) -> OracleResponse:
        """
        Run the solver on one request.

        Raises
        ------
        OracleInvocationError
            If the binary is missing, exits non-zero, or leaves no usable
            response file
        OracleTimeoutError
            If the solver runs longer than the timeout
        """
        if not self.binary_path.is_file():
            raise OracleInvocationError(
                f"Demarcation binary not found: {self.binary_path}"
            )

        self.working_directory.mkdir(parents=True, exist_ok=True)
        input_path, output_path = self.exchange_files(request.iteration)
        if output_path.exists():
            output_path.unlink()
        write_request_file(request, input_path)

        cmd = self.build_command(input_path, output_path)
        logger.debug(f"Running demarcation (iteration {request.iteration}): {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout,
                check=True
            )
        except subprocess.TimeoutExpired as e:
            error_msg = (f"Demarcation iteration {request.iteration} timed out "
                         f"after {self.timeout} seconds")
            logger.error(error_msg)
            raise OracleTimeoutError(error_msg) from e
        except subprocess.CalledProcessError as e:
            error_msg = (f"Demarcation iteration {request.iteration} failed with "
                         f"exit status {e.returncode}:\n{e.stderr}")
            logger.error(error_msg)
            raise OracleInvocationError(error_msg) from e
        except OSError as e:
            error_msg = f"Failed to run demarcation binary {self.binary_path}: {e}"
            logger.error(error_msg)
            raise OracleInvocationError(error_msg) from e

        if self.debug and result.stdout:
            logger.debug(f"demarcation output:\n{result.stdout}")

        response = read_response_file(output_path, request.omega, request.sigma)
        if not self.keep_files:
            input_path.unlink()
            output_path.unlink()
        return response
