#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
triview - Arabic/English translation pipeline CLI

Usage:
    python -m triview run --sections data/sections --output outputs --scope 1,2
    python -m triview run --dry-run --no-excellence-rail
    python -m triview tm-stats
    python -m triview tm-cleanup --min-usage 2 --max-age-days 30
    python -m triview flags
"""

import argparse
import asyncio
import json
import logging
import sys

from .config import load_pipeline_config
from .flag_store import FlagStore
from .orchestrator import PipelineError, run_pipeline
from .translation_memory import TMConfig, TranslationMemory

logger = logging.getLogger(__name__)


def _config_from_args(args):
    overrides = {
        "sections_dir": getattr(args, "sections", None),
        "output_dir": getattr(args, "output", None),
        "section_scope": getattr(args, "scope", None),
        "concurrency": getattr(args, "concurrency", None),
        "gates_path": getattr(args, "gates", None),
    }
    if getattr(args, "dry_run", False):
        overrides["translator"] = "mock"
    if getattr(args, "no_excellence_rail", False):
        overrides["excellence_rail"] = False
    return load_pipeline_config(args.config, overrides)


def cmd_run(args):
    """Run both passes and merge."""
    config = _config_from_args(args)
    try:
        result = asyncio.run(run_pipeline(config))
    except PipelineError as e:
        logger.error("Pipeline failed: %s", e)
        print(f"❌ {e}", file=sys.stderr)
        return 1

    summary = result.summary
    print(f"✅ {summary.successful_rows}/{summary.total_rows} rows successful "
          f"({summary.failed_rows} failed, {summary.skipped_rows} skipped)")
    if result.second_pass_rows:
        print(f"   Second pass: {len(result.second_pass_rows)} rows")
    print(f"   Output: {summary.triview_path}")
    return 0


def cmd_tm_stats(args):
    """Print translation memory statistics."""
    config = _config_from_args(args)
    tm = TranslationMemory(TMConfig(location=str(config.tm_path)))
    try:
        print(json.dumps(tm.get_stats(), indent=2, ensure_ascii=False))
    finally:
        tm.close()
    return 0


def cmd_tm_cleanup(args):
    """Drop rarely used, stale translation memory entries."""
    config = _config_from_args(args)
    tm = TranslationMemory(TMConfig(location=str(config.tm_path)))
    try:
        removed = tm.cleanup(min_usage=args.min_usage, max_age_days=args.max_age_days)
    finally:
        tm.close()
    print(f"🧹 Removed {removed} TM entries")
    return 0


def cmd_flags(args):
    """Show pending expansion/readability flags."""
    config = _config_from_args(args)
    summary = asyncio.run(FlagStore.for_directory(config.output_dir).summary())
    print(json.dumps(summary, indent=2))
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog='triview',
        description='Arabic/English tri-view translation pipeline'
    )
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-c', '--config', help='Pipeline config YAML')
    common.add_argument('-o', '--output', help='Output directory')

    # Run command
    run_parser = subparsers.add_parser('run', parents=[common], help='Run the translation pipeline')
    run_parser.add_argument('-s', '--sections', help='Section JSON directory')
    run_parser.add_argument('--scope', help="Comma-separated section ids, or 'all'")
    run_parser.add_argument('--concurrency', type=int, help='Rows in flight at once')
    run_parser.add_argument('--gates', help='Deployment gates file')
    run_parser.add_argument('--dry-run', action='store_true', help='Use the offline mock translator')
    run_parser.add_argument('--no-excellence-rail', action='store_true', help='Disable the Excellence Rail')
    run_parser.set_defaults(func=cmd_run)

    # TM commands
    stats_parser = subparsers.add_parser('tm-stats', parents=[common], help='Translation memory statistics')
    stats_parser.set_defaults(func=cmd_tm_stats)

    cleanup_parser = subparsers.add_parser('tm-cleanup', parents=[common], help='Clean up translation memory')
    cleanup_parser.add_argument('--min-usage', type=int, default=1, help='Remove entries used fewer times than this')
    cleanup_parser.add_argument('--max-age-days', type=int, default=90, help='...and untouched for this many days')
    cleanup_parser.set_defaults(func=cmd_tm_cleanup)

    # Flags command
    flags_parser = subparsers.add_parser('flags', parents=[common], help='Show pending flags')
    flags_parser.set_defaults(func=cmd_flags)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
