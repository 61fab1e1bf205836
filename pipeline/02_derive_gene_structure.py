#!/usr/bin/env python3
"""
derive_gene_structure.py — Stage 2: exon/intron structure per OR gene

Parses the OR annotation table, derives per-gene total and intron rows,
structure labels and linearized coordinates, and joins supplementary
group/classification metadata onto the results.

A gene that cannot be derived (no exons, 3+ fragments, tied exon
starts) is skipped and listed in skipped_genes.tsv; the batch continues.

Inputs:
  - or_annotation.tsv       (headerless GFF-like table)
  - or_supplementary.tsv    (optional; header TSV filtered to one species)

Outputs:
  - gene_structure.tsv      — all derived rows
  - gene_totals.tsv         — total rows with supplementary metadata
  - skipped_genes.tsv       — gene, error_type, reason
  - manifest.json

Usage:
  python 02_derive_gene_structure.py
  python 02_derive_gene_structure.py --annotation or_annotation.tsv --workers 4 -v
"""

import argparse
import logging
import os
import sys
from pathlib import Path

import pandas as pd

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lib'))
from or_utils import load_config, resolve_path, validate_config, create_stage_manifest
from annotation_io import join_supplementary, read_annotation, read_supplementary, write_table
from structure_deriver import DeriverConfig, MissingJoinKeyError, derive_all


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
        description="Derive exon/intron structure for every annotated OR gene",
    )
    parser.add_argument("--config", help="pipeline_config.yaml (default: search)")
    parser.add_argument("--annotation", type=Path, help="Override annotation.path")
    parser.add_argument("--supplementary", type=Path, help="Override supplementary.path")
    parser.add_argument("--no-supplementary", action="store_true",
                        help="Skip the supplementary join")
    parser.add_argument("--strict-join", action="store_true",
                        help="Fail if a gene has no supplementary entry")
    parser.add_argument("-o", "--output-dir", type=Path, help="Override output.dir")
    parser.add_argument("--workers", type=int, default=1, help="Parallel worker processes")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()
    logger = setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        validate_config(config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    annotation_path = args.annotation or resolve_path(config, config["annotation"]["path"])
    sup_cfg = config.get("supplementary", {})
    sup_path = None
    if not args.no_supplementary:
        if args.supplementary:
            sup_path = args.supplementary
        elif sup_cfg.get("path"):
            sup_path = resolve_path(config, sup_cfg["path"])
    output_dir = args.output_dir or resolve_path(config, config.get("output", {}).get("dir", "results/structure"))
    deriver_config = DeriverConfig.from_config(config)

    logger.info("=" * 60)
    logger.info("STAGE 2: GENE STRUCTURE DERIVATION")
    logger.info("=" * 60)
    logger.info(f"Fragment span: {deriver_config.fragment_span:,}")

    logger.info("\n[1] Reading annotation...")
    try:
        features = read_annotation(annotation_path, config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    logger.info("\n[2] Deriving structures...")
    result = derive_all(features, deriver_config, workers=args.workers, progress=True)
    derived = result.records

    totals = derived[derived["feature"] == "total"].reset_index(drop=True)
    missing = []
    if sup_path is not None:
        logger.info(f"\n[3] Joining supplementary metadata from {sup_path}...")
        try:
            supplementary = read_supplementary(sup_path, config)
            totals, missing = join_supplementary(
                totals, supplementary,
                gene_column=sup_cfg.get("gene_column", "gene"),
                strict=args.strict_join,
            )
        except (FileNotFoundError, ValueError, MissingJoinKeyError) as e:
            logger.error(f"Supplementary join failed: {e}")
            return 1
    else:
        logger.info("\n[3] Supplementary join skipped")

    logger.info("\n[4] Writing outputs...")
    structure_path = write_table(derived, output_dir / "gene_structure.tsv")
    totals_path = write_table(totals, output_dir / "gene_totals.tsv")
    skipped = result.skipped_table()
    skipped_path = write_table(skipped, output_dir / "skipped_genes.tsv")
    if missing:
        write_table(
            pd.DataFrame({"gene": [e.gene for e in missing]}),
            output_dir / "genes_without_supplementary.tsv",
        )

    stats = {
        "n_feature_rows": int(len(features)),
        "n_genes_input": int(features["gene"].nunique()) if not features.empty else 0,
        "n_genes_derived": result.n_genes,
        "n_genes_skipped": len(result.skipped),
        "skipped_by_error": skipped["error_type"].value_counts().to_dict(),
        "n_length_discrepancies": len(result.discrepancies),
        "n_missing_supplementary": len(missing),
    }
    inputs = {"annotation": str(annotation_path)}
    if sup_path is not None:
        inputs["supplementary"] = str(sup_path)
    create_stage_manifest(
        "derive_gene_structure",
        inputs=inputs,
        outputs={
            "gene_structure": str(structure_path),
            "gene_totals": str(totals_path),
            "skipped_genes": str(skipped_path),
        },
        config=config,
        stats=stats,
        output_path=str(output_dir / "manifest.json"),
    )

    print("\n" + "=" * 60)
    print("GENE STRUCTURE SUMMARY")
    print("=" * 60)
    print(f"Genes in annotation:   {stats['n_genes_input']:,}")
    print(f"Genes derived:         {stats['n_genes_derived']:,}")
    print(f"Genes skipped:         {stats['n_genes_skipped']:,}")
    for err, n in stats["skipped_by_error"].items():
        print(f"  {err}: {n}")
    print(f"Length discrepancies:  {stats['n_length_discrepancies']:,}")
    print(f"Missing supplementary: {stats['n_missing_supplementary']:,}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
