"""
annotation_io.py — Reading and writing the OR annotation tables.

Annotation input is a headerless, GFF-like TSV:

    location  source  feature  start  end  dot1  strand  dot2  attributes

  location   = "<LG><sep><frag>", e.g. "LG3_frag12" with sep "_frag"
  attributes = "<gene name><sep><feature title>", e.g. "PpyrOR12; Exon 3"

The supplementary table is a header TSV with one row per gene and species,
carrying group/classification metadata joined onto the derived totals.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from or_utils import Strand, load_gene_synonyms, normalize_gene_name
from structure_deriver import MissingJoinKeyError

logger = logging.getLogger(__name__)


ANNOTATION_COLUMNS = [
    "location", "source", "feature", "start", "end",
    "dot1", "strand", "dot2", "attributes",
]

DEFAULT_LOCATION_SEPARATOR = "_frag"
DEFAULT_ATTRIBUTE_SEPARATOR = ";"
DEFAULT_KEEP_FEATURES = ("exon", "CDS")


# ============================================================
# FIELD PARSING
# ============================================================

def split_location(location: str, separator: str = DEFAULT_LOCATION_SEPARATOR) -> Tuple[str, int]:
    """
    Split a location into linkage group and fragment index.

    >>> split_location("LG3_frag12")
    ('LG3', 12)
    """
    lg, sep, frag = str(location).rpartition(separator)
    if not sep or not lg:
        raise ValueError(f"Location {location!r} has no {separator!r} separator")
    try:
        return lg, int(frag)
    except ValueError:
        raise ValueError(f"Location {location!r} has non-integer fragment {frag!r}")


def split_attributes(
    attributes: str,
    separator: str = DEFAULT_ATTRIBUTE_SEPARATOR,
    synonyms: Optional[Dict[str, str]] = None,
) -> Tuple[str, str]:
    """
    Split the attribute field into (gene name, feature title).

    A "Name=" style key on the gene field is dropped; the gene name is
    passed through the synonym correction table.

    >>> split_attributes("Name=PpyrOR12; Exon 2 Part 1")
    ('PpyrOR12', 'Exon 2 Part 1')
    """
    gene, _, title = str(attributes).partition(separator)
    gene = gene.strip()
    if "=" in gene:
        gene = gene.split("=", 1)[1]
    return normalize_gene_name(gene, synonyms), title.strip()


# ============================================================
# ANNOTATION TABLE
# ============================================================

def parse_annotation(raw: pd.DataFrame, config: Optional[dict] = None) -> pd.DataFrame:
    """
    Turn the raw 9-column table into FeatureRecord rows.

    Adds LG, frag, gene and title; keeps only the configured feature kinds;
    sorts by gene, frag, start. Strands are only stripped and rows with an
    unparseable location get a null LG/frag, so a bad row is rejected later
    for its own gene by the deriver rather than failing the whole table.
    """
    config = config or {}
    ann = config.get("annotation", {})
    loc_sep = ann.get("location_separator", DEFAULT_LOCATION_SEPARATOR)
    attr_sep = ann.get("attribute_separator", DEFAULT_ATTRIBUTE_SEPARATOR)
    keep = set(ann.get("keep_features") or DEFAULT_KEEP_FEATURES)
    synonyms = load_gene_synonyms(config)

    n_raw = len(raw)
    df = raw[raw["feature"].isin(keep)].copy()
    logger.info(f"Kept {len(df):,}/{n_raw:,} rows with feature in {sorted(keep)}")

    if df.empty:
        return df.assign(LG=[], frag=[], gene=[], title=[])

    lgs, frags = [], []
    for location in df["location"]:
        try:
            lg, frag = split_location(location, loc_sep)
        except ValueError as e:
            logger.warning(str(e))
            lg, frag = None, None
        lgs.append(lg)
        frags.append(frag)
    df["LG"] = lgs
    df["frag"] = pd.array(frags, dtype="Int64")

    names = df["attributes"].map(lambda x: split_attributes(x, attr_sep, synonyms))
    df["gene"] = [gene for gene, _ in names]
    df["title"] = [title for _, title in names]

    renamed = sum(
        1 for raw_attr, gene in zip(df["attributes"], df["gene"])
        if split_attributes(raw_attr, attr_sep)[0] != gene
    )
    if renamed:
        logger.info(f"Applied gene-name corrections to {renamed:,} rows")

    df["strand"] = df["strand"].astype(str).str.strip()
    bad_strand = ~df["strand"].isin([s.value for s in Strand])
    if bad_strand.any():
        logger.warning(
            f"{int(bad_strand.sum()):,} rows have an unknown strand: "
            f"{sorted(df.loc[bad_strand, 'strand'].unique())}"
        )
    df["start"] = df["start"].astype(int)
    df["end"] = df["end"].astype(int)

    df = df.sort_values(["gene", "frag", "start"], kind="mergesort").reset_index(drop=True)
    logger.info(f"Parsed {df['gene'].nunique():,} genes from {len(df):,} feature rows")
    return df


def read_annotation(path, config: Optional[dict] = None) -> pd.DataFrame:
    """Read and parse a headerless annotation TSV."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Annotation file not found: {path}")
    raw = pd.read_csv(
        path, sep="\t", header=None, names=ANNOTATION_COLUMNS,
        dtype={"location": str, "strand": str, "attributes": str},
    )
    # only whole-line comments; "#" may appear inside attribute titles
    raw = raw[~raw["location"].str.startswith("#", na=False)].reset_index(drop=True)
    logger.info(f"Loaded {len(raw):,} annotation rows from {path.name}")
    return parse_annotation(raw, config)


# ============================================================
# SUPPLEMENTARY TABLE
# ============================================================

def read_supplementary(path, config: Optional[dict] = None) -> pd.DataFrame:
    """
    Read the supplementary annotation table, filtered to one species.

    Duplicate gene rows keep the first occurrence.
    """
    config = config or {}
    sup = config.get("supplementary", {})
    species_col = sup.get("species_column", "species")
    gene_col = sup.get("gene_column", "gene")
    species = sup.get("species")

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Supplementary table not found: {path}")
    df = pd.read_csv(path, sep="\t", dtype=str)

    for col in (gene_col,) + ((species_col,) if species else ()):
        if col not in df.columns:
            raise ValueError(f"Supplementary table missing column {col!r}: {list(df.columns)}")

    if species:
        df = df[df[species_col].str.strip() == species]
        logger.info(f"Supplementary rows for {species}: {len(df):,}")

    df = df.copy()
    df[gene_col] = df[gene_col].str.strip()
    n_before = len(df)
    df = df.drop_duplicates(subset=gene_col, keep="first")
    if len(df) < n_before:
        logger.warning(f"Dropped {n_before - len(df)} duplicate supplementary gene rows")
    return df.reset_index(drop=True)


def join_supplementary(
    derived: pd.DataFrame,
    supplementary: pd.DataFrame,
    gene_column: str = "gene",
    strict: bool = False,
) -> Tuple[pd.DataFrame, List[MissingJoinKeyError]]:
    """
    Left-join supplementary metadata onto derived rows by gene.

    Genes with no supplementary entry keep null metadata and are returned
    as MissingJoinKeyError instances; with strict=True the first one is
    raised instead.
    """
    sup = supplementary.rename(columns={gene_column: "gene"})
    overlap = [c for c in sup.columns if c != "gene" and c in derived.columns]
    if overlap:
        sup = sup.rename(columns={c: f"sup_{c}" for c in overlap})

    known = set(sup["gene"])
    missing = [
        MissingJoinKeyError(gene, "no supplementary annotation entry")
        for gene in sorted(derived["gene"].unique()) if gene not in known
    ]
    if missing and strict:
        raise missing[0]
    for err in missing:
        logger.warning(f"Missing supplementary entry for {err.gene}")

    joined = derived.merge(sup, on="gene", how="left", validate="many_to_one")
    return joined, missing


# ============================================================
# OUTPUT
# ============================================================

def write_table(df: pd.DataFrame, path) -> Path:
    """Write a tab-separated table without index, creating parent dirs."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False)
    logger.info(f"Wrote {len(df):,} rows to {path}")
    return path
