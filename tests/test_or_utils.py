"""
Tests for config loading/validation, enums, gene-name correction and manifests.

Usage:
    pytest tests/test_or_utils.py -v
"""

import copy
import json
from pathlib import Path

import pytest

from or_utils import (
    Strand,
    compute_file_checksum,
    create_stage_manifest,
    load_config,
    load_gene_synonyms,
    normalize_gene_name,
    resolve_path,
    validate_config,
)
from structure_deriver import DeriverConfig

SHIPPED_CONFIG = Path(__file__).resolve().parent.parent / "config" / "pipeline_config.yaml"


@pytest.fixture
def shipped_config(monkeypatch):
    monkeypatch.delenv("PIPELINE_ROOT", raising=False)
    return load_config(str(SHIPPED_CONFIG))


def test_shipped_config_is_valid(shipped_config):
    validate_config(shipped_config)
    assert shipped_config["structure"]["fragment_span"] == 200000


def test_project_root_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("PIPELINE_ROOT", str(tmp_path))
    config = load_config(str(SHIPPED_CONFIG))
    assert config["_project_root"] == tmp_path.resolve()
    assert resolve_path(config, "results/x.tsv") == tmp_path.resolve() / "results" / "x.tsv"


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.yaml"))


def test_validate_config_collects_errors(shipped_config):
    config = copy.deepcopy(shipped_config)
    config["structure"]["fragment_span"] = -5
    config["annotation"]["keep_features"] = ["exon", "mRNA"]
    config["expression"]["min_samples"] = -1

    with pytest.raises(ValueError) as exc:
        validate_config(config)
    msg = str(exc.value)
    assert "fragment_span" in msg
    assert "keep_features" in msg
    assert "min_samples" in msg


def test_deriver_config_from_config(shipped_config):
    dc = DeriverConfig.from_config(shipped_config)
    assert dc.fragment_span == 200000
    assert dc.exon_prefix == "Exon "
    assert dc.exon_kinds == frozenset({"exon", "CDS"})
    assert dc.part_pattern == DeriverConfig().part_pattern


def test_deriver_config_defaults_for_empty_config():
    assert DeriverConfig.from_config({}) == DeriverConfig()


def test_strand_parse():
    assert Strand.parse("+") is Strand.PLUS
    assert Strand.parse(" - ") is Strand.MINUS
    with pytest.raises(ValueError):
        Strand.parse(".")


def test_gene_synonyms(shipped_config):
    synonyms = load_gene_synonyms(shipped_config)
    assert normalize_gene_name(" Ppyr0R5 ", synonyms) == "PpyrOR5"
    assert normalize_gene_name("PpyrOR77", synonyms) == "PpyrOR77"
    assert load_gene_synonyms({}) == {}


def test_stage_manifest(tmp_path):
    inp = tmp_path / "in.tsv"
    inp.write_text("gene\nPpyrOR1\n")
    out_path = tmp_path / "out" / "manifest.json"
    config = {"structure": {"fragment_span": 200000}, "_project_root": tmp_path}

    manifest = create_stage_manifest(
        "unit", {"annotation": str(inp)}, {"missing": str(tmp_path / "nope.tsv")},
        config, {"n_genes": 1}, str(out_path),
    )

    on_disk = json.loads(out_path.read_text())
    assert on_disk["stage"] == "unit"
    assert on_disk["inputs"]["annotation"]["md5"] == compute_file_checksum(str(inp))
    assert "md5" not in on_disk["outputs"]["missing"]
    assert "_project_root" not in on_disk["config"]
    assert manifest["stats"] == {"n_genes": 1}
