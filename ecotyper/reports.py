"""
Demarcation Reports

This module writes the tabular outputs of a run (ecotype membership, bin
levels, the oracle decision log, a plain-text ecotype listing) and a compact
self-contained HTML summary report.
"""

import base64
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import pandas as pd
import numpy as np
from jinja2 import Template

from .binning import BinLevel, bins_to_dataframe, compact_bins
from .demarcation import DemarcationResult
from .oracle import ParameterSet

logger = logging.getLogger(__name__)


def write_ecotype_table(result: DemarcationResult, output_csv: Union[str, Path]) -> Path:
    """
    Write one row per sequence with its ecotype number and label.

    Parameters
    ----------
    result : DemarcationResult
        Demarcation outcome
    output_csv : Union[str, Path]
        Output CSV path (columns: ecotype, label, sequence)
    """
    out = Path(output_csv)
    out.parent.mkdir(parents=True, exist_ok=True)
    result.to_dataframe().to_csv(out, index=False)
    logger.info(f"Ecotype table saved: {out} ({len(result.ecotypes)} ecotypes)")
    return out


def write_bin_levels(levels: Sequence[BinLevel], output_tsv: Union[str, Path],
                     compact: bool = False) -> Path:
    """
    Write bin levels as a tab-separated 'crit'/'level' table.

    Parameters
    ----------
    levels : Sequence[BinLevel]
        Bin levels to write
    output_tsv : Union[str, Path]
        Output path
    compact : bool, optional
        Drop levels repeating the previous cluster count (default: False)
    """
    out = Path(output_tsv)
    out.parent.mkdir(parents=True, exist_ok=True)
    if compact:
        levels = compact_bins(levels)
    bins_to_dataframe(levels).to_csv(out, sep="\t", index=False, float_format="%.3f")
    logger.info(f"Bin levels saved: {out}")
    return out


def write_demarcation_log(result: DemarcationResult, output_csv: Union[str, Path]) -> Path:
    """Write the per-iteration oracle decisions as CSV."""
    out = Path(output_csv)
    out.parent.mkdir(parents=True, exist_ok=True)
    result.decisions_to_dataframe().to_csv(out, index=False)
    logger.info(f"Demarcation log saved: {out} ({result.oracle_calls} oracle calls)")
    return out


def write_ecotype_listing(result: DemarcationResult, output_txt: Union[str, Path]) -> Path:
    """Write the ecotype listing in the legacy 'Ecotype N: [...]' layout."""
    out = Path(output_txt)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, 'w') as fh:
        fh.write(str(result))
    return out


def ecotype_size_summary(result: DemarcationResult) -> pd.DataFrame:
    """
    Summarize ecotype sizes.

    Returns
    -------
    pd.DataFrame
        One row per ecotype: label, n_sequences and the first member
    """
    return pd.DataFrame(
        [
            {
                "label": ecotype.label,
                "n_sequences": len(ecotype),
                "representative": ecotype.members[0],
            }
            for ecotype in result.ecotypes
        ],
        columns=["label", "n_sequences", "representative"],
    )


# ============================================================================
# HTML Report
# ============================================================================

HTML_REPORT_CSS = """
<style>
    body { font-family: -apple-system, "Segoe UI", Helvetica, Arial, sans-serif;
           margin: 0; background: #f5f6f8; color: #222; }
    .container { max-width: 1100px; margin: 0 auto; padding: 24px; }
    .header h1 { margin-bottom: 4px; }
    .subtitle, .timestamp { color: #666; }
    .quick-stats { display: flex; gap: 16px; margin: 20px 0; }
    .quick-stat { background: #fff; border-radius: 6px; padding: 12px 20px;
                  box-shadow: 0 1px 3px rgba(0,0,0,0.1); }
    .quick-stat .number { font-size: 1.6em; font-weight: 600; }
    .quick-stat .label { color: #666; font-size: 0.9em; }
    .section { background: #fff; border-radius: 6px; padding: 16px 24px;
               margin-bottom: 20px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }
    table { border-collapse: collapse; width: 100%; font-size: 0.9em; }
    th, td { border-bottom: 1px solid #e3e3e3; padding: 6px 8px; text-align: left; }
    th { background: #fafafa; }
    img { max-width: 100%; }
    .footer { color: #888; font-size: 0.85em; text-align: center; }
</style>
"""

HTML_REPORT_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="generator" content="Ecotyper">
    <title>{{ run_name }} - Ecotyper Report</title>
    {{ css | safe }}
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>{{ run_name }}</h1>
            <div class="subtitle">Ecotype Demarcation Report</div>
            <div class="timestamp">Generated: {{ timestamp }} (Ecotyper v{{ version }})</div>
        </div>

        {% if quick_stats %}
        <div class="quick-stats">
            {% for stat in quick_stats %}
            <div class="quick-stat">
                <div class="number">{{ stat.value }}</div>
                <div class="label">{{ stat.label }}</div>
            </div>
            {% endfor %}
        </div>
        {% endif %}

        {% for section in sections %}
        <div class="section">
            <h2>{{ section.title }}</h2>
            {{ section.body | safe }}
        </div>
        {% endfor %}

        <div class="footer">
            <p><strong>Ecotyper</strong> - ecotype demarcation from phylogenies</p>
        </div>
    </div>
</body>
</html>
"""


class HTMLReportBuilder:
    """
    Builder for the HTML summary report.

    Parameters
    ----------
    run_name : str
        Title of the report (usually the tree file stem)
    version : str, optional
        Ecotyper version
    """

    def __init__(self, run_name: str, version: str = "1.0.0"):
        self.run_name = run_name
        self.version = version
        self.sections: List[Dict[str, str]] = []
        self.quick_stats: List[Dict[str, str]] = []

    def add_quick_stat(self, value: str, label: str):
        """Add a quick stat to the header bar."""
        self.quick_stats.append({'value': value, 'label': label})

    def add_section(self, title: str, body: str):
        self.sections.append({'title': title, 'body': body})

    def render(self) -> str:
        """Render the complete HTML document."""
        template = Template(HTML_REPORT_TEMPLATE)
        return template.render(
            run_name=self.run_name,
            version=self.version,
            timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            css=HTML_REPORT_CSS,
            quick_stats=self.quick_stats,
            sections=self.sections,
        )


def _format_number(value: float, decimals: int = 2) -> str:
    """Format a number for display."""
    if pd.isna(value):
        return "N/A"
    if isinstance(value, (int, np.integer)):
        return f"{value:,}"
    return f"{value:,.{decimals}f}"


def _dataframe_to_html(df: pd.DataFrame, max_rows: int = 100) -> str:
    """Convert a DataFrame to an HTML table, truncated to max_rows."""
    if df.empty:
        return '<p>No data available</p>'

    truncated = len(df) > max_rows
    html = df.head(max_rows).to_html(index=False, border=0, escape=True)
    if truncated:
        html += f'<p>Showing first {max_rows} rows of {len(df)} total</p>\n'
    return html


def _encode_image_to_base64(image_path: Path) -> Optional[str]:
    """Encode an image as a data URI for embedding, or None if it is missing."""
    if not image_path.exists():
        return None

    mime_types = {'.png': 'image/png', '.svg': 'image/svg+xml', '.jpg': 'image/jpeg'}
    mime_type = mime_types.get(image_path.suffix.lower(), 'image/png')
    with open(image_path, 'rb') as f:
        encoded = base64.b64encode(f.read()).decode('utf-8')
    return f"data:{mime_type};base64,{encoded}"


def _parameters_table(global_params: ParameterSet, nu: int, sequence_length: int,
                      precision: str) -> pd.DataFrame:
    return pd.DataFrame(
        [
            ("npop", _format_number(global_params.npop)),
            ("omega", _format_number(global_params.omega, 4)),
            ("sigma", _format_number(global_params.sigma, 4)),
            ("likelihood", _format_number(global_params.likelihood, 4)),
            ("nu", _format_number(nu)),
            ("sequence length", _format_number(sequence_length)),
            ("precision", precision),
        ],
        columns=["parameter", "value"],
    )


def generate_html_report(
    run_name: str,
    output_dir: Union[str, Path],
    result: DemarcationResult,
    global_bins: Sequence[BinLevel],
    global_params: ParameterSet,
    nu: int,
    sequence_length: int,
    images: Optional[Sequence[Union[str, Path]]] = None,
    version: str = "1.0.0",
) -> Path:
    """
    Generate the HTML summary report of a demarcation run.

    Parameters
    ----------
    run_name : str
        Report title; also used for the file name
    output_dir : Union[str, Path]
        Directory the report is written to
    result : DemarcationResult
        Demarcation outcome
    global_bins : Sequence[BinLevel]
        Whole-tree bin levels
    global_params : ParameterSet
        Global parameter estimate the run started from
    nu, sequence_length : int
        Ingroup size and usable alignment length
    images : Sequence[Union[str, Path]], optional
        Figures to embed (missing files are skipped)
    version : str, optional
        Ecotyper version (default: "1.0.0")

    Returns
    -------
    Path
        Path to the written report
    """
    logger.info(f"Generating HTML summary report for {run_name}...")

    builder = HTMLReportBuilder(run_name=run_name, version=version)
    builder.add_quick_stat(_format_number(nu), 'Sequences')
    builder.add_quick_stat(_format_number(len(result.ecotypes)), 'Ecotypes')
    builder.add_quick_stat(_format_number(result.oracle_calls), 'Oracle Calls')

    builder.add_section(
        "Parameters",
        _dataframe_to_html(_parameters_table(global_params, nu, sequence_length,
                                             result.precision.value)),
    )
    builder.add_section("Ecotypes", _dataframe_to_html(ecotype_size_summary(result)))
    builder.add_section("Bin Levels", _dataframe_to_html(bins_to_dataframe(global_bins)))
    builder.add_section("Oracle Decisions", _dataframe_to_html(result.decisions_to_dataframe()))

    figures = []
    for image in images or []:
        data_uri = _encode_image_to_base64(Path(image))
        if data_uri is None:
            logger.warning(f"Figure not found, skipped in report: {image}")
            continue
        figures.append(f'<img src="{data_uri}" alt="{Path(image).stem}">')
    if figures:
        builder.add_section("Figures", "\n".join(figures))

    output_file = Path(output_dir) / f"{run_name}_report.html"
    output_file.parent.mkdir(parents=True, exist_ok=True)
    with open(output_file, 'w', encoding='utf-8') as f:
        f.write(builder.render())

    logger.info(f"HTML report saved: {output_file}")
    return output_file
