#!/usr/bin/env python3
"""
prepare_expression_matrix.py — Stage 1: count matrix for DE / VST

Reads per-sample pseudoalignment quantifications listed in a sample sheet,
sums transcripts to genes, drops low-expression genes and writes the
integer count matrix plus sample metadata, then runs PyDESeq2 median-of-ratios
normalization and the variance-stabilizing transform on the filtered genes.

Inputs:
  - samples.tsv   (sample, path, + design columns)
  - tx2gene.tsv   (transcript_id, gene_id; optional)

Outputs:
  - gene_counts_raw.tsv        — all genes, integer counts
  - gene_counts_filtered.tsv   — after the low-expression filter
  - gene_counts_normalized.tsv — size-factor normalized counts
  - gene_counts_vst.tsv        — variance-stabilized matrix
  - size_factors.tsv
  - sample_metadata.tsv        — design columns for the DE model
  - manifest.json

Usage:
  python 01_prepare_expression_matrix.py
  python 01_prepare_expression_matrix.py --sample-sheet samples.tsv --min-count 5 -v
"""

import argparse
import logging
import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lib'))
from or_utils import load_config, resolve_path, validate_config, create_stage_manifest
from expression_utils import (
    build_count_matrix,
    filter_low_expression,
    load_sample_sheet,
    load_tx2gene,
    normalize_counts,
    variance_stabilize,
)
from annotation_io import write_table


def setup_logging(verbose: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    return logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Build the filtered gene count matrix from transcript quantifications",
    )
    parser.add_argument("--config", help="pipeline_config.yaml (default: search)")
    parser.add_argument("--sample-sheet", type=Path, help="Override expression.sample_sheet")
    parser.add_argument("--tx2gene", type=Path, help="Override expression.tx2gene")
    parser.add_argument("--min-count", type=int, help="Override expression.min_count")
    parser.add_argument("--min-samples", type=int, help="Override expression.min_samples")
    parser.add_argument("--design-factor", help="Override expression.design_factor")
    parser.add_argument("-o", "--output-dir", type=Path, help="Override expression.output_dir")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()
    logger = setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        validate_config(config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    expr = config.get("expression", {})
    sample_sheet = args.sample_sheet or resolve_path(config, expr["sample_sheet"])
    tx2gene_path = args.tx2gene or (resolve_path(config, expr["tx2gene"]) if expr.get("tx2gene") else None)
    min_count = args.min_count if args.min_count is not None else expr.get("min_count", 10)
    min_samples = args.min_samples if args.min_samples is not None else expr.get("min_samples", 1)
    output_dir = args.output_dir or resolve_path(config, expr.get("output_dir", "results/expression"))
    design_factor = args.design_factor or expr.get("design_factor", "condition")
    fit_type = expr.get("vst_fit_type", "parametric")

    logger.info("=" * 60)
    logger.info("STAGE 1: EXPRESSION MATRIX")
    logger.info("=" * 60)

    logger.info("\n[1] Loading sample sheet...")
    try:
        sheet = load_sample_sheet(sample_sheet)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1
    logger.info(f"  {len(sheet)} samples: {', '.join(sheet.index)}")

    tx2gene = None
    if tx2gene_path is not None:
        logger.info(f"\n[2] Loading transcript->gene map from {tx2gene_path}...")
        tx2gene = load_tx2gene(tx2gene_path)
        logger.info(f"  {len(tx2gene):,} transcripts mapped")
    else:
        logger.info("\n[2] No tx2gene map; keeping transcript-level counts")

    logger.info("\n[3] Building count matrix...")
    try:
        counts = build_count_matrix(sheet["path"].to_dict(), tx2gene, expr.get("value", "est_counts"))
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    logger.info("\n[4] Filtering low-expression genes...")
    filtered = filter_low_expression(counts, min_count, min_samples)
    if filtered.empty:
        logger.error("No genes pass the low-expression filter")
        return 1
    metadata = sheet.drop(columns=["path"])

    logger.info("\n[5] Normalizing and variance-stabilizing...")
    try:
        normalized, size_factors = normalize_counts(filtered)
        vst = variance_stabilize(filtered, metadata, design_factor, fit_type)
    except ValueError as e:
        logger.error(str(e))
        return 1

    logger.info("\n[6] Writing outputs...")
    raw_path = write_table(counts.reset_index(), output_dir / "gene_counts_raw.tsv")
    filt_path = write_table(filtered.reset_index(), output_dir / "gene_counts_filtered.tsv")
    norm_path = write_table(normalized.reset_index(), output_dir / "gene_counts_normalized.tsv")
    vst_path = write_table(vst.reset_index(), output_dir / "gene_counts_vst.tsv")
    sf_path = write_table(size_factors.rename_axis("sample").reset_index(), output_dir / "size_factors.tsv")
    meta_path = write_table(metadata.reset_index(), output_dir / "sample_metadata.tsv")

    stats = {
        "n_samples": int(counts.shape[1]),
        "n_features_raw": int(counts.shape[0]),
        "n_features_filtered": int(filtered.shape[0]),
        "min_count": min_count,
        "min_samples": min_samples,
        "design_factor": design_factor,
        "vst_fit_type": fit_type,
    }
    inputs = {"sample_sheet": str(sample_sheet)}
    if tx2gene_path is not None:
        inputs["tx2gene"] = str(tx2gene_path)
    inputs.update({f"quant_{s}": p for s, p in sheet["path"].items()})
    create_stage_manifest(
        "prepare_expression_matrix",
        inputs=inputs,
        outputs={
            "raw": str(raw_path), "filtered": str(filt_path),
            "normalized": str(norm_path), "vst": str(vst_path),
            "size_factors": str(sf_path), "metadata": str(meta_path),
        },
        config=config,
        stats=stats,
        output_path=str(output_dir / "manifest.json"),
    )

    logger.info("=" * 60)
    logger.info(f"Done: {stats['n_features_filtered']:,}/{stats['n_features_raw']:,} features kept")
    logger.info("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
