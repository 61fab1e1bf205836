"""
Tests for annotation parsing, supplementary join and table output.

Usage:
    pytest tests/test_annotation_io.py -v
"""

import pandas as pd
import pytest

from annotation_io import (
    ANNOTATION_COLUMNS,
    join_supplementary,
    parse_annotation,
    read_annotation,
    read_supplementary,
    split_attributes,
    split_location,
    write_table,
)
from structure_deriver import MissingJoinKeyError, derive_all

CONFIG = {
    "annotation": {
        "location_separator": "_frag",
        "attribute_separator": ";",
        "keep_features": ["exon", "CDS"],
        "gene_synonyms": {"Ppyr0R5": "PpyrOR5"},
    },
    "supplementary": {
        "species": "Photinus pyralis",
        "species_column": "species",
        "gene_column": "gene",
    },
}

ANNOTATION_LINES = [
    "LG1_frag0\tmanual\tgene\t100\t900\t.\t+\t.\tPpyrOR1; gene",
    "LG1_frag0\tmanual\texon\t400\t500\t.\t+\t.\tPpyrOR1; Exon 2",
    "LG1_frag0\tmanual\texon\t100\t200\t.\t+\t.\tPpyrOR1; Exon 1",
    "LG2_frag7\tmanual\tCDS\t1000\t1200\t.\t-\t.\tName=Ppyr0R5; Exon 1",
    "LG2_frag7\tmanual\tmRNA\t1000\t1200\t.\t-\t.\tName=Ppyr0R5; mRNA",
]


def _raw():
    rows = [line.split("\t") for line in ANNOTATION_LINES]
    return pd.DataFrame(rows, columns=ANNOTATION_COLUMNS)


# =============================================================================
# FIELD PARSING
# =============================================================================

def test_split_location():
    assert split_location("LG3_frag12") == ("LG3", 12)
    # separator is split on its last occurrence
    assert split_location("scaffold_frag_A_frag2") == ("scaffold_frag_A", 2)


@pytest.mark.parametrize("bad", ["LG3", "_frag3", "LG3_fragX"])
def test_split_location_rejects_malformed(bad):
    with pytest.raises(ValueError):
        split_location(bad)


def test_split_attributes():
    assert split_attributes("PpyrOR12; Exon 2 Part 1") == ("PpyrOR12", "Exon 2 Part 1")
    assert split_attributes("Name=PpyrOR12;Exon 3") == ("PpyrOR12", "Exon 3")
    assert split_attributes("Ppyr0R5; Exon 1", synonyms={"Ppyr0R5": "PpyrOR5"}) == ("PpyrOR5", "Exon 1")


def test_split_attributes_without_title():
    assert split_attributes("PpyrOR12") == ("PpyrOR12", "")


# =============================================================================
# ANNOTATION TABLE
# =============================================================================

def test_parse_annotation_filters_and_sorts():
    df = parse_annotation(_raw(), CONFIG)

    assert set(df["feature"]) == {"exon", "CDS"}
    assert list(df["gene"]) == ["PpyrOR1", "PpyrOR1", "PpyrOR5"]
    assert list(df["title"]) == ["Exon 1", "Exon 2", "Exon 1"]
    assert list(df["LG"]) == ["LG1", "LG1", "LG2"]
    assert list(df["frag"]) == [0, 0, 7]
    assert list(df["start"]) == [100, 400, 1000]


def test_unknown_strand_skips_only_that_gene():
    raw = _raw()
    raw.loc[3, "strand"] = "."
    df = parse_annotation(raw, CONFIG)
    assert sorted(df["gene"].unique()) == ["PpyrOR1", "PpyrOR5"]

    result = derive_all(df)
    assert list(result.records["gene"].unique()) == ["PpyrOR1"]
    assert [(s.gene, s.error_type) for s in result.skipped] == [("PpyrOR5", "MalformedGeneError")]
    assert "Unknown strand" in result.skipped[0].reason


def test_bad_location_skips_only_that_gene():
    raw = _raw()
    raw.loc[3, "location"] = "LG2_fragX"
    df = parse_annotation(raw, CONFIG)
    assert df["frag"].isna().sum() == 1

    result = derive_all(df)
    assert list(result.records["gene"].unique()) == ["PpyrOR1"]
    assert [s.gene for s in result.skipped] == ["PpyrOR5"]
    assert "LG2_fragX" in result.skipped[0].reason


def test_parse_annotation_nothing_kept():
    raw = _raw()
    raw["feature"] = "gene"
    df = parse_annotation(raw, CONFIG)
    assert df.empty
    assert "gene" in df.columns


def test_read_annotation_feeds_deriver(tmp_path):
    path = tmp_path / "or_annotation.tsv"
    path.write_text("# comment line\n" + "\n".join(ANNOTATION_LINES) + "\n")

    features = read_annotation(path, CONFIG)
    result = derive_all(features)

    assert result.n_genes == 2
    totals = result.records[result.records["feature"] == "total"].set_index("gene")
    assert totals.loc["PpyrOR1", "structure"] == "1,2"
    assert totals.loc["PpyrOR5", "converted_start"] == 7 * 200000 + 1000


def test_read_annotation_keeps_hash_inside_titles(tmp_path):
    path = tmp_path / "or_annotation.tsv"
    path.write_text(
        "## header comment\n"
        "LG1_frag0\tmanual\texon\t100\t200\t.\t+\t.\tPpyrOR1; Exon #1\n"
        "LG1_frag0\tmanual\texon\t400\t500\t.\t+\t.\tPpyrOR1; Exon #2\n"
    )
    features = read_annotation(path, CONFIG)
    assert list(features["title"]) == ["Exon #1", "Exon #2"]

    derived = derive_all(features).records
    assert set(derived["structure"]) == {"#1,#2"}


def test_read_annotation_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_annotation(tmp_path / "nope.tsv", CONFIG)


# =============================================================================
# SUPPLEMENTARY
# =============================================================================

def _write_supplementary(tmp_path):
    path = tmp_path / "supplementary.tsv"
    path.write_text(
        "gene\tspecies\tgroup\tsubfamily\n"
        "PpyrOR1\tPhotinus pyralis\tGroup A\t1\n"
        "PpyrOR1\tPhotinus pyralis\tGroup Z\t9\n"
        "AlatOR1\tAquatica lateralis\tGroup B\t2\n"
        "PpyrOR9\tPhotinus pyralis\tGroup C\t3\n"
    )
    return path


def test_read_supplementary_filters_species(tmp_path):
    sup = read_supplementary(_write_supplementary(tmp_path), CONFIG)
    assert list(sup["gene"]) == ["PpyrOR1", "PpyrOR9"]
    # first duplicate wins
    assert sup.loc[0, "group"] == "Group A"


def test_read_supplementary_missing_column(tmp_path):
    path = tmp_path / "bad.tsv"
    path.write_text("name\tspecies\nPpyrOR1\tPhotinus pyralis\n")
    with pytest.raises(ValueError, match="missing column"):
        read_supplementary(path, CONFIG)


def test_join_supplementary_reports_missing_genes(tmp_path):
    sup = read_supplementary(_write_supplementary(tmp_path), CONFIG)
    totals = pd.DataFrame({"gene": ["PpyrOR1", "PpyrOR5"], "feature": ["total", "total"]})

    joined, missing = join_supplementary(totals, sup)

    assert len(joined) == 2
    joined = joined.set_index("gene")
    assert joined.loc["PpyrOR1", "group"] == "Group A"
    assert pd.isna(joined.loc["PpyrOR5", "group"])
    assert [e.gene for e in missing] == ["PpyrOR5"]
    assert all(isinstance(e, MissingJoinKeyError) for e in missing)


def test_join_supplementary_strict_raises(tmp_path):
    sup = read_supplementary(_write_supplementary(tmp_path), CONFIG)
    totals = pd.DataFrame({"gene": ["PpyrOR5"]})
    with pytest.raises(MissingJoinKeyError):
        join_supplementary(totals, sup, strict=True)


def test_join_supplementary_renames_clashing_columns():
    derived = pd.DataFrame({"gene": ["PpyrOR1"], "strand": ["+"]})
    sup = pd.DataFrame({"gene_name": ["PpyrOR1"], "strand": ["-"], "group": ["A"]})
    joined, missing = join_supplementary(derived, sup, gene_column="gene_name")
    assert missing == []
    assert joined.loc[0, "strand"] == "+"
    assert joined.loc[0, "sup_strand"] == "-"


# =============================================================================
# OUTPUT
# =============================================================================

def test_write_table_creates_parents(tmp_path):
    df = pd.DataFrame({"gene": ["PpyrOR1"], "structure": ["1,2"]})
    path = write_table(df, tmp_path / "nested" / "out.tsv")
    assert path.read_text().splitlines() == ["gene\tstructure", "PpyrOR1\t1,2"]
