"""
structure_summary.py — Descriptive tables over derived gene structures.

These are the inputs for the structure bar charts and exon/intron length
histograms; rendering happens outside this pipeline.
"""

import pandas as pd

from or_utils import FeatureKind
from structure_deriver import length_discrepancy

_SYNTHETIC = [FeatureKind.TOTAL.value, FeatureKind.INTRON.value]


def summarize_structures(derived: pd.DataFrame) -> pd.DataFrame:
    """One row per gene: strand, exon/intron counts, length, structure, discrepancy."""
    rows = []
    for gene, group in derived.groupby("gene", sort=True):
        kind = group["feature"]
        total = group[kind == FeatureKind.TOTAL.value].iloc[0]
        rows.append({
            "gene": gene,
            "LG": total["LG"],
            "strand": total["strand"],
            "n_exons": int((~kind.isin(_SYNTHETIC)).sum()),
            "n_introns": int((kind == FeatureKind.INTRON.value).sum()),
            "gene_length": int(total["length"]),
            "structure": total["structure"],
            "discrepancy": length_discrepancy(group),
        })
    return pd.DataFrame(
        rows,
        columns=["gene", "LG", "strand", "n_exons", "n_introns",
                 "gene_length", "structure", "discrepancy"],
    )


def structure_counts(summary: pd.DataFrame) -> pd.DataFrame:
    """Number of genes per structure label, most common first."""
    counts = (
        summary.groupby("structure").size()
        .rename("n_genes").reset_index()
        .sort_values(["n_genes", "structure"], ascending=[False, True])
        .reset_index(drop=True)
    )
    return counts


def length_table(derived: pd.DataFrame, kind: str = "exon") -> pd.DataFrame:
    """
    Absolute lengths of exon or intron rows.

    kind="exon" covers every exon-like feature (exon, CDS).
    """
    if kind == FeatureKind.INTRON.value:
        mask = derived["feature"] == FeatureKind.INTRON.value
    elif kind == FeatureKind.EXON.value:
        mask = ~derived["feature"].isin(_SYNTHETIC)
    else:
        raise ValueError(f"kind must be 'exon' or 'intron', got {kind!r}")
    out = derived.loc[mask, ["gene", "title", "rank", "length"]].copy()
    out["length"] = out["length"].abs()
    return out.reset_index(drop=True)
