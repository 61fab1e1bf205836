"""
structure_deriver.py — Per-gene exon/intron structure derivation.

For every gene in a filtered annotation table this builds:
  - one synthetic 'total' row spanning the gene
  - n_exons - 1 synthetic 'intron' rows, in transcript (5'->3') order
  - a structure label shared by all rows of the gene ("1,2,3", "A1,A2,BC")
  - converted coordinates (fragment-linearized) and relative coordinates
    (gene-relative, flipped on the minus strand so the first transcript
    exon always starts at 0)

Genes whose annotation crosses one fragment boundary are normalized onto
the lower fragment first, and exons recorded as "<name> Part 1" /
"<name> Part 2" are merged into one logical exon.

Genes are independent units of work: derive() handles one gene,
derive_all() runs a whole table and isolates per-gene failures.
"""

import logging
import re
from collections import defaultdict
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

import pandas as pd
from tqdm import tqdm

from or_utils import EXON_KINDS, FeatureKind, Strand

logger = logging.getLogger(__name__)


# Required input columns; anything else is passed through on exon rows
INPUT_COLUMNS = ["gene", "frag", "feature", "start", "end", "strand", "title"]

OUTPUT_COLUMNS = [
    "gene", "LG", "frag", "feature", "title", "strand",
    "start", "end", "length", "rank",
    "converted_start", "converted_end",
    "relative_start", "relative_end",
    "structure",
]

DEFAULT_FRAGMENT_SPAN = 200_000
DEFAULT_EXON_PREFIX = "Exon "
DEFAULT_PART_PATTERN = r"^(?P<name>.+?)\s+Part\s+(?P<part>\d+)$"


# ============================================================
# ERRORS
# ============================================================

class StructureError(Exception):
    """Base class for per-gene failures. Carries the gene identifier."""

    def __init__(self, gene: str, message: str):
        self.gene = gene
        self.message = message
        super().__init__(f"{gene}: {message}")

    def __reduce__(self):
        return (type(self), (self.gene, self.message))


class MalformedGeneError(StructureError):
    """No exon rows, mixed strands, or exon order cannot be established."""


class UnsupportedFragmentSpanError(StructureError):
    """Gene annotation spans three or more fragments."""


class MissingJoinKeyError(StructureError):
    """Gene has no entry in the supplementary annotation table."""


# ============================================================
# CONFIG
# ============================================================

@dataclass(frozen=True)
class DeriverConfig:
    fragment_span: int = DEFAULT_FRAGMENT_SPAN
    exon_kinds: FrozenSet[str] = EXON_KINDS
    exon_prefix: str = DEFAULT_EXON_PREFIX
    part_pattern: str = DEFAULT_PART_PATTERN

    @classmethod
    def from_config(cls, config: dict) -> "DeriverConfig":
        """Build the deriver settings from the 'structure' config section."""
        section = config.get("structure", {})
        keep = config.get("annotation", {}).get("keep_features")
        return cls(
            fragment_span=int(section.get("fragment_span", DEFAULT_FRAGMENT_SPAN)),
            exon_kinds=frozenset(keep) if keep else EXON_KINDS,
            exon_prefix=section.get("exon_prefix", DEFAULT_EXON_PREFIX),
            part_pattern=section.get("part_pattern", DEFAULT_PART_PATTERN),
        )


# ============================================================
# SINGLE GENE
# ============================================================

def _normalize_fragments(rows: List[dict], base_frag: int, span: int) -> List[dict]:
    """
    Shift rows on the upper fragment into the base fragment's coordinates.

    The offset is (frag - base_frag) * span, so base_frag * span plus a
    normalized coordinate equals frag * span plus the local one.
    """
    normalized = []
    for row in rows:
        row = dict(row)
        row["frag"] = int(row["frag"])
        offset = (row["frag"] - base_frag) * span
        row["start"] = int(row["start"]) + offset
        row["end"] = int(row["end"]) + offset
        normalized.append(row)
    # stable: keeps the given within-fragment order for equal starts
    normalized.sort(key=lambda r: r["start"])
    return normalized


def _merge_split_exons(rows: List[dict], config: DeriverConfig) -> List[dict]:
    """Collapse '<name> Part N' exon rows into one logical exon per name."""
    pattern = re.compile(config.part_pattern)
    parts = defaultdict(list)
    for i, row in enumerate(rows):
        if row["feature"] not in config.exon_kinds:
            continue
        m = pattern.match(str(row["title"]))
        if m:
            parts[m.group("name")].append(i)

    replacements = {}
    dropped = set()
    for name, idxs in parts.items():
        if len(idxs) < 2:
            first = rows[idxs[0]]
            logger.warning(
                f"{first['gene']}: '{first['title']}' has no matching part, kept unmerged"
            )
            continue
        members = [rows[i] for i in idxs]
        coords = [c for r in members for c in (r["start"], r["end"])]
        merged = dict(members[0])
        merged["start"] = min(coords)
        merged["end"] = max(coords)
        merged["title"] = name
        merged["frag"] = min(r["frag"] for r in members)
        replacements[idxs[0]] = merged
        dropped.update(idxs[1:])

    return [replacements.get(i, row) for i, row in enumerate(rows) if i not in dropped]


def _ordered_exons(gene: str, rows: List[dict], config: DeriverConfig) -> List[dict]:
    exons = [r for r in rows if r["feature"] in config.exon_kinds]
    if not exons:
        raise MalformedGeneError(gene, "no exon/CDS rows to derive introns from")
    starts = [r["start"] for r in exons]
    if len(set(starts)) != len(starts):
        tied = sorted({s for s in starts if starts.count(s) > 1})
        raise MalformedGeneError(
            gene, f"exon order cannot be established, tied starts at {tied}"
        )
    return exons


def _derive_introns(exons: List[dict], strand: Strand) -> List[Tuple[int, int, int, int]]:
    """
    Return (start, end, length, frag) per intron in transcript order.

    Plus strand walks exons in genome order; minus strand walks from the
    genomically last exon backward, so its intron start is the higher
    coordinate.
    """
    n = len(exons)
    introns = []
    if strand is Strand.PLUS:
        for k in range(n - 1):
            start = exons[k]["end"] + 1
            end = exons[k + 1]["start"] - 1
            introns.append((start, end, end - start, exons[k]["frag"]))
    elif strand is Strand.MINUS:
        for k in range(n - 1):
            downstream = exons[n - 1 - k]
            upstream = exons[n - 2 - k]
            start = downstream["start"] - 1
            end = upstream["end"] + 1
            introns.append((start, end, start - end, upstream["frag"]))
    else:
        raise ValueError(f"Unhandled strand: {strand!r}")
    return introns


def build_structure(titles, prefix: str = DEFAULT_EXON_PREFIX) -> str:
    """
    Canonical structure label: exon titles without the prefix, string-sorted.

    >>> build_structure(["Exon 2", "Exon 1", "Exon 10"])
    '1,10,2'
    """
    tokens = []
    for title in titles:
        title = str(title)
        tokens.append(title[len(prefix):] if title.startswith(prefix) else title)
    return ",".join(sorted(tokens))


def derive(gene_features: pd.DataFrame, config: Optional[DeriverConfig] = None) -> pd.DataFrame:
    """
    Derive total, intron, structure and coordinate columns for one gene.

    Args:
        gene_features: exon/CDS rows of a single gene with columns
                       gene, frag, feature, start, end, strand, title
                       (LG and any other columns are carried along).
                       Rows must be sorted by ascending start within
                       each fragment.
        config: DeriverConfig; defaults apply when None.

    Returns:
        DataFrame with OUTPUT_COLUMNS (plus pass-through columns):
        the total row, the exon rows in genome order, then the introns
        in transcript order.

    Raises:
        MalformedGeneError: no exon rows, mixed strands/genes, unknown strand,
            unparseable fragment, tied starts.
        UnsupportedFragmentSpanError: rows on three or more fragments.
    """
    config = config or DeriverConfig()

    missing = [c for c in INPUT_COLUMNS if c not in gene_features.columns]
    if missing:
        raise ValueError(f"Feature table missing columns: {missing}")
    if gene_features.empty:
        raise MalformedGeneError("<empty>", "no feature rows")

    genes = gene_features["gene"].unique()
    gene = str(genes[0])
    if len(genes) > 1:
        raise MalformedGeneError(gene, f"rows from several genes in one group: {list(genes)}")

    if gene_features["frag"].isna().any():
        bad = gene_features.loc[gene_features["frag"].isna()]
        where = list(bad["location"]) if "location" in bad.columns else bad["title"].tolist()
        raise MalformedGeneError(gene, f"fragment could not be determined for {where}")

    strands = gene_features["strand"].unique()
    if len(strands) != 1:
        raise MalformedGeneError(gene, f"mixed strands {sorted(map(str, strands))}")
    try:
        strand = Strand.parse(strands[0])
    except ValueError as e:
        raise MalformedGeneError(gene, str(e))

    frags = sorted({int(f) for f in gene_features["frag"]})
    if len(frags) > 2:
        raise UnsupportedFragmentSpanError(
            gene, f"features span {len(frags)} fragments {frags}, at most 2 supported"
        )
    base_frag = frags[0]
    span = config.fragment_span
    if len(frags) == 2 and frags[1] - frags[0] != 1:
        logger.warning(f"{gene}: features on non-adjacent fragments {frags}")

    rows = _normalize_fragments(gene_features.to_dict("records"), base_frag, span)
    if len(frags) == 2:
        rows = _merge_split_exons(rows, config)

    exons = _ordered_exons(gene, rows, config)
    n = len(exons)

    coords = [c for r in rows for c in (r["start"], r["end"])]
    lg = rows[0].get("LG")
    records = [{
        "gene": gene, "LG": lg, "frag": base_frag,
        "feature": FeatureKind.TOTAL.value, "title": FeatureKind.TOTAL.value,
        "strand": strand.value, "start": min(coords), "end": max(coords),
        "rank": 0,
    }]

    for i, exon in enumerate(exons):
        rec = dict(exon)
        rec.setdefault("LG", lg)
        rec["strand"] = strand.value
        rec["rank"] = i + 1 if strand is Strand.PLUS else n - i
        records.append(rec)

    for k, (start, end, length, frag) in enumerate(_derive_introns(exons, strand)):
        records.append({
            "gene": gene, "LG": lg, "frag": frag,
            "feature": FeatureKind.INTRON.value, "title": f"Intron {k + 1}",
            "strand": strand.value, "start": start, "end": end,
            "length": length, "rank": k + 1,
        })

    for rec in records:
        if rec["feature"] != FeatureKind.INTRON.value:
            rec["length"] = rec["end"] - rec["start"]

    df = pd.DataFrame.from_records(records)
    df["length"] = df["length"].astype(int)
    df["rank"] = df["rank"].astype(int)

    df["converted_start"] = base_frag * span + df["start"]
    df["converted_end"] = base_frag * span + df["end"]

    total_start, total_end = df.loc[0, "converted_start"], df.loc[0, "converted_end"]
    if strand is Strand.PLUS:
        df["relative_start"] = df["converted_start"] - total_start
        df["relative_end"] = df["converted_end"] - total_start
    else:
        hi = df[["converted_start", "converted_end"]].max(axis=1)
        lo = df[["converted_start", "converted_end"]].min(axis=1)
        df["relative_start"] = (hi - total_end).abs()
        df["relative_end"] = (lo - total_end).abs()

    df["structure"] = build_structure([e["title"] for e in exons], config.exon_prefix)

    extra = [c for c in df.columns if c not in OUTPUT_COLUMNS]
    return df[OUTPUT_COLUMNS + extra]


# ============================================================
# SELF-CHECK
# ============================================================

def length_discrepancy(derived: pd.DataFrame) -> int:
    """
    total_length - (exon lengths + intron lengths + 2 * (n_exons - 1)).

    Zero for a well-formed gene. The 2 per intron accounts for the +1/-1
    applied when intron bounds are taken from the neighbouring exons.
    """
    kind = derived["feature"]
    total = derived.loc[kind == FeatureKind.TOTAL.value, "length"]
    if len(total) != 1:
        raise ValueError(f"Expected one total row, found {len(total)}")
    is_exon = ~kind.isin([FeatureKind.TOTAL.value, FeatureKind.INTRON.value])
    n_exons = int(is_exon.sum())
    parts = derived.loc[is_exon, "length"].sum() + derived.loc[kind == FeatureKind.INTRON.value, "length"].sum()
    return int(total.iloc[0] - (parts + 2 * (n_exons - 1)))


# ============================================================
# BATCH
# ============================================================

@dataclass
class SkippedGene:
    gene: str
    error_type: str
    reason: str


@dataclass
class DerivationResult:
    """Derived rows for every processed gene plus the genes that failed."""
    records: pd.DataFrame
    skipped: List[SkippedGene] = field(default_factory=list)
    discrepancies: Dict[str, int] = field(default_factory=dict)

    @property
    def n_genes(self) -> int:
        if self.records.empty:
            return 0
        return int(self.records["gene"].nunique())

    def skipped_table(self) -> pd.DataFrame:
        return pd.DataFrame(
            [vars(s) for s in self.skipped],
            columns=["gene", "error_type", "reason"],
        )


def _derive_task(task):
    """Worker entry point; returns (gene, frame_or_None, SkippedGene_or_None)."""
    gene, group, config = task
    try:
        return gene, derive(group, config), None
    except StructureError as e:
        return gene, None, SkippedGene(gene, type(e).__name__, e.message)


def derive_all(
    features: pd.DataFrame,
    config: Optional[DeriverConfig] = None,
    workers: int = 1,
    progress: bool = False,
) -> DerivationResult:
    """
    Derive every gene in a feature table.

    A failing gene is logged and listed in result.skipped; the others
    are unaffected. Output rows are grouped by gene in sorted gene order.
    """
    config = config or DeriverConfig()
    tasks = [(str(gene), group, config) for gene, group in features.groupby("gene", sort=True)]

    frames: Dict[str, pd.DataFrame] = {}
    skipped: List[SkippedGene] = []

    def _collect(outcome):
        gene, frame, skip = outcome
        if skip is not None:
            logger.warning(f"Skipping {gene}: {skip.error_type}: {skip.reason}")
            skipped.append(skip)
        else:
            frames[gene] = frame

    if workers > 1 and len(tasks) > 1:
        logger.info(f"Deriving {len(tasks)} genes with {workers} workers...")
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(_derive_task, task): task[0] for task in tasks}
            for future in as_completed(futures):
                _collect(future.result())
    else:
        for task in tqdm(tasks, desc="Deriving gene structures", disable=not progress):
            _collect(_derive_task(task))

    discrepancies = {}
    for gene, frame in frames.items():
        diff = length_discrepancy(frame)
        if diff != 0:
            logger.warning(f"{gene}: total length differs from exon+intron sum by {diff}")
            discrepancies[gene] = diff

    if frames:
        records = pd.concat([frames[g] for g in sorted(frames)], ignore_index=True)
    else:
        records = pd.DataFrame(columns=OUTPUT_COLUMNS)

    skipped.sort(key=lambda s: s.gene)
    logger.info(f"Derived {len(frames)} genes, skipped {len(skipped)}")
    return DerivationResult(records=records, skipped=skipped, discrepancies=discrepancies)
