#!/usr/bin/env python3
"""
summarize_gene_structure.py — Stage 3: descriptive structure tables

Reads gene_structure.tsv from stage 2 and writes the tables behind the
structure bar chart and the exon/intron length histograms.

Outputs (in the stage 2 output dir unless -o is given):
  - structure_per_gene.tsv
  - structure_counts.tsv
  - exon_lengths.tsv
  - intron_lengths.tsv
  - summary_manifest.json

Usage:
  python 03_summarize_gene_structure.py
  python 03_summarize_gene_structure.py --structure results/structure/gene_structure.tsv
"""

import argparse
import logging
import os
import sys
from pathlib import Path

import pandas as pd

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lib'))
from or_utils import load_config, resolve_path, create_stage_manifest
from annotation_io import write_table
from structure_summary import length_table, structure_counts, summarize_structures


def setup_logging(verbose: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    return logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Summarize derived OR gene structures")
    parser.add_argument("--config", help="pipeline_config.yaml (default: search)")
    parser.add_argument("--structure", type=Path, help="gene_structure.tsv from stage 2")
    parser.add_argument("-o", "--output-dir", type=Path)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()
    logger = setup_logging(args.verbose)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1

    stage2_dir = resolve_path(config, config.get("output", {}).get("dir", "results/structure"))
    structure_path = args.structure or stage2_dir / "gene_structure.tsv"
    output_dir = args.output_dir or stage2_dir

    if not structure_path.exists():
        logger.error(f"Structure table not found: {structure_path}")
        logger.error("Run 02_derive_gene_structure.py first")
        return 1

    derived = pd.read_csv(structure_path, sep="\t", dtype={"structure": str, "title": str, "gene": str})
    logger.info(f"Loaded {len(derived):,} derived rows for {derived['gene'].nunique():,} genes")

    per_gene = summarize_structures(derived)
    counts = structure_counts(per_gene)
    exons = length_table(derived, "exon")
    introns = length_table(derived, "intron")

    outputs = {
        "structure_per_gene": write_table(per_gene, output_dir / "structure_per_gene.tsv"),
        "structure_counts": write_table(counts, output_dir / "structure_counts.tsv"),
        "exon_lengths": write_table(exons, output_dir / "exon_lengths.tsv"),
        "intron_lengths": write_table(introns, output_dir / "intron_lengths.tsv"),
    }

    stats = {
        "n_genes": int(len(per_gene)),
        "n_structures": int(len(counts)),
        "median_exon_length": float(exons["length"].median()) if len(exons) else None,
        "median_intron_length": float(introns["length"].median()) if len(introns) else None,
    }
    create_stage_manifest(
        "summarize_gene_structure",
        inputs={"gene_structure": str(structure_path)},
        outputs={k: str(v) for k, v in outputs.items()},
        config=config,
        stats=stats,
        output_path=str(output_dir / "summary_manifest.json"),
    )

    logger.info("Top structures:")
    for _, row in counts.head(10).iterrows():
        logger.info(f"  {row['structure']:<30} {row['n_genes']:>5}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
