"""
End-to-end runs of the pipeline scripts on a tiny project directory.

Usage:
    pytest tests/test_pipeline_scripts.py -v
"""

import json
import os
import subprocess
import sys
from pathlib import Path

import pandas as pd
import pytest
import yaml

PIPELINE_DIR = Path(__file__).resolve().parent.parent / "pipeline"

ANNOTATION = "\n".join([
    "LG1_frag0\tmanual\texon\t100\t200\t.\t+\t.\tPpyrOR1; Exon 1",
    "LG1_frag0\tmanual\texon\t400\t500\t.\t+\t.\tPpyrOR1; Exon 2",
    "LG2_frag4\tmanual\texon\t195000\t200000\t.\t-\t.\tPpyrOR2; Exon 1 Part 2",
    "LG2_frag5\tmanual\texon\t0\t800\t.\t-\t.\tPpyrOR2; Exon 1 Part 1",
    "LG2_frag3\tmanual\texon\t1000\t2000\t.\t-\t.\tPpyrOR3; Exon 2",
    "LG2_frag4\tmanual\texon\t1000\t2000\t.\t-\t.\tPpyrOR3; Exon 1",
    "LG2_frag5\tmanual\texon\t1000\t2000\t.\t-\t.\tPpyrOR3; Exon 0",
    "LG3_frag1\tmanual\texon\t50\t90\t.\t+\t.\tPpyrOr22; Exon 1",
]) + "\n"

SUPPLEMENTARY = (
    "gene\tspecies\tgroup\n"
    "PpyrOR1\tPhotinus pyralis\tGroup 1\n"
    "PpyrOR22\tPhotinus pyralis\tGroup 4\n"
)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "data").mkdir()
    (tmp_path / "data" / "or_annotation.tsv").write_text(ANNOTATION)
    (tmp_path / "data" / "or_supplementary.tsv").write_text(SUPPLEMENTARY)
    config = {
        "project_root": str(tmp_path),
        "expression": {"min_count": 1, "min_samples": 1},
        "annotation": {
            "path": "data/or_annotation.tsv",
            "location_separator": "_frag",
            "attribute_separator": ";",
            "keep_features": ["exon", "CDS"],
            "gene_synonyms": {"PpyrOr22": "PpyrOR22"},
        },
        "structure": {"fragment_span": 200000, "exon_prefix": "Exon "},
        "supplementary": {
            "path": "data/or_supplementary.tsv",
            "species": "Photinus pyralis",
        },
        "output": {"dir": "results"},
    }
    config_path = tmp_path / "pipeline_config.yaml"
    config_path.write_text(yaml.safe_dump(config))
    return tmp_path, config_path


def _run(script, *args):
    env = {k: v for k, v in os.environ.items() if k != "PIPELINE_ROOT"}
    return subprocess.run(
        [sys.executable, str(PIPELINE_DIR / script), *args],
        capture_output=True, text=True, env=env,
    )


def test_structure_stages(project):
    root, config_path = project

    derive = _run("02_derive_gene_structure.py", "--config", str(config_path))
    assert derive.returncode == 0, derive.stderr

    results = root / "results"
    structure = pd.read_csv(results / "gene_structure.tsv", sep="\t", dtype={"structure": str})
    assert sorted(structure["gene"].unique()) == ["PpyrOR1", "PpyrOR2", "PpyrOR22"]

    merged = structure[(structure["gene"] == "PpyrOR2") & (structure["feature"] == "exon")]
    assert list(merged["title"]) == ["Exon 1"]
    assert (merged["start"].iloc[0], merged["end"].iloc[0]) == (195000, 200800)

    skipped = pd.read_csv(results / "skipped_genes.tsv", sep="\t")
    assert list(skipped["gene"]) == ["PpyrOR3"]
    assert list(skipped["error_type"]) == ["UnsupportedFragmentSpanError"]

    totals = pd.read_csv(results / "gene_totals.tsv", sep="\t").set_index("gene")
    assert totals.loc["PpyrOR22", "group"] == "Group 4"
    assert pd.isna(totals.loc["PpyrOR2", "group"])

    manifest = json.loads((results / "manifest.json").read_text())
    assert manifest["stats"]["n_genes_skipped"] == 1
    assert manifest["stats"]["n_missing_supplementary"] == 1

    summary = _run("03_summarize_gene_structure.py", "--config", str(config_path))
    assert summary.returncode == 0, summary.stderr
    counts = pd.read_csv(results / "structure_counts.tsv", sep="\t", dtype={"structure": str})
    assert counts.set_index("structure").loc["1", "n_genes"] == 2


def test_derive_missing_annotation_exits_nonzero(project, tmp_path):
    _, config_path = project
    proc = _run(
        "02_derive_gene_structure.py", "--config", str(config_path),
        "--annotation", str(tmp_path / "absent.tsv"),
    )
    assert proc.returncode == 1


def test_orchestrator_dry_run(project):
    _, config_path = project
    proc = _run("run_pipeline.py", "--config", str(config_path), "--dry-run", "--skip-expression")
    assert proc.returncode == 0, proc.stderr
    assert "Derive gene structure" in proc.stderr
