"""
or_utils.py — Shared utilities for the firefly OR gene-structure pipeline.

MECHANISM ONLY. Policy (fragment span, which feature kinds to keep,
gene-name corrections, species filter) lives in pipeline_config.yaml.

This module provides:
  - Config loading, path resolution and validation
  - Strand / feature-kind enums
  - Gene-name synonym correction
  - Stage manifest creation
  - File checksum computation
"""

import hashlib
import json
import logging
import os
import subprocess
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


# ============================================================
# CONFIG LOADING
# ============================================================

def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load pipeline config from YAML.
    Resolves project_root from PIPELINE_ROOT env var or config default.

    Args:
        config_path: Path to YAML file. If None, searches for
                     config/pipeline_config.yaml relative to this file,
                     then cwd.
    """
    try:
        import yaml
    except ImportError:
        raise ImportError("PyYAML required: pip install pyyaml")

    if config_path is None:
        candidates = [
            Path(__file__).parent.parent / "config" / "pipeline_config.yaml",
            Path.cwd() / "config" / "pipeline_config.yaml",
            Path.cwd() / "pipeline_config.yaml",
        ]
        for c in candidates:
            if c.is_file():
                config_path = str(c)
                break
        if config_path is None:
            raise FileNotFoundError(
                "Cannot find pipeline_config.yaml. Set config_path explicitly."
            )

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    config["_project_root"] = Path(
        os.environ.get("PIPELINE_ROOT", config.get("project_root", "."))
    ).resolve()

    return config


def resolve_path(config: dict, relative_path: str) -> Path:
    """Resolve a config-relative path to absolute using project_root."""
    return config["_project_root"] / relative_path


# ============================================================
# ENUMS
# ============================================================

class Strand(str, Enum):
    PLUS = "+"
    MINUS = "-"

    @classmethod
    def parse(cls, raw: str) -> "Strand":
        """
        >>> Strand.parse(" - ")
        <Strand.MINUS: '-'>
        """
        try:
            return cls(str(raw).strip())
        except ValueError:
            raise ValueError(f"Unknown strand {raw!r} (expected '+' or '-')")


class FeatureKind(str, Enum):
    EXON = "exon"
    CDS = "CDS"
    TOTAL = "total"
    INTRON = "intron"


# Feature kinds that count as exons when deriving introns and structures
EXON_KINDS = frozenset({FeatureKind.EXON.value, FeatureKind.CDS.value})
VST_FIT_TYPES = frozenset({"parametric", "mean"})


# ============================================================
# GENE NAME CORRECTION
# ============================================================

def normalize_gene_name(raw: str, synonyms: Optional[Dict[str, str]] = None) -> str:
    """
    Strip a gene name and apply the synonym correction table.

    Corrections are exact-match only; names absent from the table pass
    through unchanged.

    >>> normalize_gene_name(" PpyrOR1 ", {"PpyrOR1": "PpyrOr1"})
    'PpyrOr1'
    >>> normalize_gene_name("PpyrOR2", {})
    'PpyrOR2'
    """
    name = str(raw).strip()
    if synonyms:
        return synonyms.get(name, name)
    return name


def load_gene_synonyms(config: dict) -> Dict[str, str]:
    """Load the gene-name correction table from config."""
    table = config.get("annotation", {}).get("gene_synonyms") or {}
    return {str(k).strip(): str(v).strip() for k, v in table.items()}


# ============================================================
# FILE UTILITIES
# ============================================================

def compute_file_checksum(filepath: str, algorithm: str = "md5") -> str:
    """Compute hex digest of a file."""
    h = hashlib.new(algorithm)
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


# ============================================================
# STAGE MANIFEST
# ============================================================

def _describe_files(paths: Dict[str, str]) -> dict:
    described = {}
    for label, fpath in paths.items():
        entry = {"path": str(fpath)}
        if os.path.isfile(fpath):
            entry["md5"] = compute_file_checksum(fpath)
            entry["size_bytes"] = os.path.getsize(fpath)
        described[label] = entry
    return described


def create_stage_manifest(
    stage_name: str,
    inputs: Dict[str, str],
    outputs: Dict[str, str],
    config: dict,
    stats: dict,
    output_path: str,
) -> dict:
    """
    Write a JSON manifest for a pipeline stage.

    Records: inputs (with checksums), outputs, full config snapshot,
    git commit if available, timestamp, and runtime stats.
    """
    manifest = {
        "stage": stage_name,
        "timestamp": datetime.now().isoformat(),
        "inputs": _describe_files(inputs),
        "outputs": _describe_files(outputs),
        "config": {k: v for k, v in config.items() if k != "_project_root"},
        "stats": stats,
    }

    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True, text=True, timeout=5
        )
        if result.returncode == 0:
            manifest["git_commit"] = result.stdout.strip()
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git commit unavailable for manifest: {e}")

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(manifest, f, indent=2, default=str)

    return manifest


# ============================================================
# CONFIG VALIDATION
# ============================================================

def validate_config(config: dict):
    """
    Validate that required config fields are present and sane.
    Raises ValueError on failures.
    """
    errors = []

    structure = config.get("structure", {})
    span = structure.get("fragment_span")
    if not isinstance(span, int) or span <= 0:
        errors.append("structure.fragment_span must be a positive integer")
    if not structure.get("exon_prefix"):
        errors.append("structure.exon_prefix is required")

    ann = config.get("annotation", {})
    if not ann.get("location_separator"):
        errors.append("annotation.location_separator is required")
    if not ann.get("attribute_separator"):
        errors.append("annotation.attribute_separator is required")
    keep = ann.get("keep_features", [])
    if not keep:
        errors.append("annotation.keep_features must list at least one feature kind")
    unknown = set(keep) - EXON_KINDS
    if unknown:
        errors.append(
            f"annotation.keep_features may only contain {sorted(EXON_KINDS)}, "
            f"got {sorted(unknown)}"
        )
    synonyms = ann.get("gene_synonyms")
    if synonyms is not None and not isinstance(synonyms, dict):
        errors.append("annotation.gene_synonyms must be a mapping")

    sup = config.get("supplementary", {})
    if sup.get("path") and not sup.get("species"):
        errors.append("supplementary.species is required when supplementary.path is set")

    expr = config.get("expression", {})
    for key in ("min_count", "min_samples"):
        value = expr.get(key, 0)
        if not isinstance(value, int) or value < 0:
            errors.append(f"expression.{key} must be a non-negative integer")
    if expr.get("vst_fit_type", "parametric") not in VST_FIT_TYPES:
        errors.append(f"expression.vst_fit_type must be one of {sorted(VST_FIT_TYPES)}")

    if errors:
        raise ValueError(
            "Config validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )
