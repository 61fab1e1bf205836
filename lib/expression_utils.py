"""
expression_utils.py — Count-matrix preparation from transcript quantifications.

Reads per-sample pseudoalignment output (abundance.tsv: target_id, length,
eff_length, est_counts, tpm), optionally sums transcripts to genes, and
drops low-expression genes. Median-of-ratios normalization and the
variance-stabilizing transform are delegated to PyDESeq2.
"""

import logging
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.preprocessing import deseq2_norm

logger = logging.getLogger(__name__)


QUANT_COLUMNS = ["target_id", "length", "eff_length", "est_counts", "tpm"]


def read_quant_file(path) -> pd.DataFrame:
    """Load one abundance.tsv, indexed by transcript id."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Quantification file not found: {path}")
    df = pd.read_csv(path, sep="\t")
    missing = [c for c in QUANT_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path}: missing quantification columns {missing}")
    return df.set_index("target_id")


def load_sample_sheet(path) -> pd.DataFrame:
    """
    Load the sample sheet (TSV with at least 'sample' and 'path' columns).

    Relative quantification paths are resolved against the sheet's
    directory. Remaining columns are sample metadata for the DE design.
    """
    path = Path(path)
    sheet = pd.read_csv(path, sep="\t", dtype=str)
    for col in ("sample", "path"):
        if col not in sheet.columns:
            raise ValueError(f"Sample sheet {path} missing column {col!r}")
    if sheet["sample"].duplicated().any():
        dups = sorted(sheet.loc[sheet["sample"].duplicated(), "sample"])
        raise ValueError(f"Sample sheet {path} has duplicate samples: {dups}")

    base = path.parent
    sheet["path"] = [
        str(p) if Path(p).is_absolute() else str(base / p) for p in sheet["path"]
    ]
    return sheet.set_index("sample")


def load_tx2gene(path) -> Dict[str, str]:
    """Transcript -> gene mapping from a two-column TSV (no header)."""
    df = pd.read_csv(path, sep="\t", header=None, usecols=[0, 1], dtype=str)
    df.columns = ["transcript_id", "gene_id"]
    return dict(zip(df["transcript_id"].str.strip(), df["gene_id"].str.strip()))


def build_count_matrix(
    sample_paths: Dict[str, str],
    tx2gene: Optional[Dict[str, str]] = None,
    value: str = "est_counts",
) -> pd.DataFrame:
    """
    Build a feature x sample matrix from per-sample quantification files.

    With tx2gene, transcripts are summed per gene; unmapped transcripts are
    dropped with a warning. est_counts are rounded to integers.
    """
    columns = {}
    for sample, qpath in sample_paths.items():
        quant = read_quant_file(qpath)
        columns[sample] = quant[value]
        logger.debug(f"{sample}: {len(quant):,} transcripts, {quant[value].sum():,.0f} {value}")

    matrix = pd.DataFrame(columns).fillna(0.0)
    matrix.index.name = "target_id"

    if tx2gene is not None:
        genes = matrix.index.map(lambda t: tx2gene.get(t))
        unmapped = int(pd.isna(genes).sum())
        if unmapped:
            logger.warning(f"{unmapped:,} transcripts have no gene mapping and are dropped")
        matrix = matrix[~pd.isna(genes)].groupby(genes[~pd.isna(genes)]).sum()
        matrix.index.name = "gene_id"

    if value == "est_counts":
        matrix = matrix.round().astype(np.int64)
    logger.info(f"Count matrix: {matrix.shape[0]:,} features x {matrix.shape[1]} samples")
    return matrix


def filter_low_expression(counts: pd.DataFrame, min_count: int = 10, min_samples: int = 1) -> pd.DataFrame:
    """
    Keep features with at least min_count reads in at least min_samples samples.

    All-zero features are always dropped.
    """
    passing = (counts >= min_count).sum(axis=1) >= min_samples
    nonzero = counts.sum(axis=1) > 0
    filtered = counts[passing & nonzero]
    logger.info(
        f"Low-expression filter (>= {min_count} in >= {min_samples} samples): "
        f"kept {len(filtered):,}/{len(counts):,}"
    )
    return filtered


# ============================================================
# NORMALIZATION / VST
# ============================================================

def normalize_counts(counts: pd.DataFrame):
    """
    DESeq2 median-of-ratios normalization of a gene x sample matrix.

    Returns (normalized gene x sample frame, size factors per sample).
    """
    normed, size_factors = deseq2_norm(counts.T)
    normalized = pd.DataFrame(
        np.asarray(normed, dtype=float), index=counts.columns, columns=counts.index,
    ).T
    size_factors = pd.Series(np.asarray(size_factors, dtype=float), index=counts.columns, name="size_factor")
    logger.info(
        "Size factors: " + ", ".join(f"{s}={f:.3f}" for s, f in size_factors.items())
    )
    return normalized, size_factors


def variance_stabilize(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    design_factor: str = "condition",
    fit_type: str = "parametric",
) -> pd.DataFrame:
    """
    Variance-stabilizing transform of a gene x sample count matrix.

    metadata is indexed by sample and must carry design_factor. The
    transform is blind to the design (size factors and dispersions are
    fitted on an intercept-only model).
    """
    samples = list(counts.columns)
    missing = [s for s in samples if s not in metadata.index]
    if missing:
        raise ValueError(f"Samples missing from metadata: {missing}")
    if design_factor not in metadata.columns:
        raise ValueError(
            f"Design factor {design_factor!r} not in sample metadata: {list(metadata.columns)}"
        )

    dds = DeseqDataSet(
        counts=counts.T.astype(int),
        metadata=metadata.loc[samples],
        design=f"~{design_factor}",
        quiet=True,
    )
    logger.info(f"Running VST ({fit_type}) on {counts.shape[0]:,} genes x {len(samples)} samples...")
    dds.vst(use_design=False, fit_type=fit_type)

    vst = pd.DataFrame(
        np.asarray(dds.layers["vst_counts"], dtype=float),
        index=list(dds.obs_names), columns=list(dds.var_names),
    ).T
    vst.index.name = counts.index.name
    return vst.loc[counts.index, samples]
