#!/usr/bin/env python3
"""
run_pipeline.py - Orchestrator: expression matrix + gene structure stages

Runs the pipeline steps in dependency order:

  1. 01_prepare_expression_matrix.py   → gene_counts_filtered.tsv, gene_counts_vst.tsv
  2. 02_derive_gene_structure.py       → gene_structure.tsv, gene_totals.tsv
  3. 03_summarize_gene_structure.py    → structure_counts.tsv, length tables

Step 1 is independent of steps 2-3.

Usage:
    python run_pipeline.py                   # full run
    python run_pipeline.py --from 2          # start from step 2
    python run_pipeline.py --only 1          # run only step 1
    python run_pipeline.py --dry-run         # show plan without executing
    python run_pipeline.py --skip-expression # structure steps only
"""

import os
import sys
import subprocess
import argparse
import logging
from pathlib import Path
from datetime import datetime

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lib'))
from or_utils import load_config, resolve_path

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# STEP DEFINITIONS
# ============================================================================

SCRIPT_DIR = Path(__file__).parent


def _expression_dir(cfg):
    return resolve_path(cfg, cfg.get('expression', {}).get('output_dir', 'results/expression'))


def _structure_dir(cfg):
    return resolve_path(cfg, cfg.get('output', {}).get('dir', 'results/structure'))


STEPS = [
    {
        'num': 1,
        'name': 'Prepare expression matrix',
        'script': '01_prepare_expression_matrix.py',
        'outputs': lambda cfg: [
            _expression_dir(cfg) / 'gene_counts_filtered.tsv',
            _expression_dir(cfg) / 'gene_counts_vst.tsv',
            _expression_dir(cfg) / 'sample_metadata.tsv',
        ],
        'is_expression': True,
    },
    {
        'num': 2,
        'name': 'Derive gene structure',
        'script': '02_derive_gene_structure.py',
        'outputs': lambda cfg: [
            _structure_dir(cfg) / 'gene_structure.tsv',
            _structure_dir(cfg) / 'gene_totals.tsv',
        ],
        'is_expression': False,
    },
    {
        'num': 3,
        'name': 'Summarize gene structure',
        'script': '03_summarize_gene_structure.py',
        'outputs': lambda cfg: [
            _structure_dir(cfg) / 'structure_counts.tsv',
        ],
        'is_expression': False,
    },
]


# ============================================================================
# EXECUTION
# ============================================================================

def check_outputs_exist(step: dict, config: dict) -> bool:
    """Check if all output files for a step already exist."""
    outputs = step['outputs'](config)
    if not outputs:
        return False
    return all(p.exists() for p in outputs)


def run_step(step: dict, config: dict, extra_args=None, dry_run: bool = False) -> bool:
    """Run a single pipeline step. Returns True on success."""
    num = step['num']
    name = step['name']
    script = SCRIPT_DIR / step['script']

    if not script.exists():
        logger.error(f"Step {num}: Script not found: {script}")
        return False

    cmd = [sys.executable, str(script)] + list(extra_args or [])

    logger.info(f"{'─' * 60}")
    logger.info(f"Step {num}: {name}")
    logger.info(f"  Command: {' '.join(cmd)}")

    if dry_run:
        for p in step['outputs'](config):
            exists = '✓ exists' if p.exists() else '✗ missing'
            logger.info(f"  Output: {p} [{exists}]")
        return True

    start = datetime.now()
    try:
        result = subprocess.run(cmd, cwd=str(SCRIPT_DIR))
    except OSError as e:
        elapsed = (datetime.now() - start).total_seconds()
        logger.error(f"Step {num}: EXCEPTION: {e} [{elapsed:.1f}s]")
        return False

    elapsed = (datetime.now() - start).total_seconds()
    if result.returncode != 0:
        logger.error(f"Step {num}: FAILED (exit code {result.returncode}) [{elapsed:.1f}s]")
        return False

    logger.info(f"Step {num}: DONE [{elapsed:.1f}s]")
    return True


def main():
    parser = argparse.ArgumentParser(
        description='Orchestrator: expression matrix and OR gene structure',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Steps:
  1  Prepare expression matrix
  2  Derive gene structure
  3  Summarize gene structure
"""
    )
    parser.add_argument('--config', help='pipeline_config.yaml (default: search)')
    parser.add_argument('--from', dest='start_from', type=int, default=1,
                        help='Start from step N (default: 1)')
    parser.add_argument('--only', type=int, help='Run only step N')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show plan without executing')
    parser.add_argument('--skip-existing', action='store_true',
                        help='Skip steps whose outputs already exist')
    parser.add_argument('--skip-expression', action='store_true',
                        help='Skip the expression step (1)')
    parser.add_argument('--workers', type=int, default=1,
                        help='Worker processes for structure derivation')
    parser.add_argument('--no-stop-on-fail', action='store_true',
                        help='Continue past failures (default: stop)')

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("pipeline_config.yaml not found. Run from project root or set PIPELINE_ROOT.")
        sys.exit(1)

    if args.only:
        steps_to_run = [s for s in STEPS if s['num'] == args.only]
        if not steps_to_run:
            logger.error(f"No such step: {args.only}")
            sys.exit(1)
    else:
        steps_to_run = [s for s in STEPS if s['num'] >= args.start_from]

    if args.skip_expression:
        steps_to_run = [s for s in steps_to_run if not s['is_expression']]

    common = ['--config', str(Path(args.config).resolve())] if args.config else []

    logger.info("=" * 60)
    logger.info("OR PIPELINE")
    logger.info(f"Steps: {[s['num'] for s in steps_to_run]}")
    logger.info(f"Mode: {'DRY RUN' if args.dry_run else 'EXECUTE'}")
    logger.info("=" * 60)

    pipeline_start = datetime.now()
    passed = 0
    failed = 0
    skipped = 0

    for step in steps_to_run:
        if args.skip_existing and check_outputs_exist(step, config):
            logger.info(f"Step {step['num']}: {step['name']} — skipped (outputs exist)")
            skipped += 1
            continue

        extra = list(common)
        if step['num'] == 2 and args.workers > 1:
            extra += ['--workers', str(args.workers)]

        ok = run_step(step, config, extra_args=extra, dry_run=args.dry_run)

        if ok:
            passed += 1
        else:
            failed += 1
            if not args.no_stop_on_fail and not args.dry_run:
                logger.error(f"Stopping pipeline at step {step['num']}.")
                break

    elapsed = (datetime.now() - pipeline_start).total_seconds()
    logger.info("=" * 60)
    logger.info("PIPELINE SUMMARY")
    logger.info(f"  Passed:  {passed}")
    logger.info(f"  Failed:  {failed}")
    logger.info(f"  Skipped: {skipped}")
    logger.info(f"  Time:    {elapsed:.1f}s ({elapsed/60:.1f}min)")
    logger.info("=" * 60)

    sys.exit(1 if failed > 0 else 0)


if __name__ == '__main__':
    main()
