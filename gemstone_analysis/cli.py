"""
Multi-image gemstone analysis command.

Analyzes all images of each gemstone in a single vision model request and
stores the consolidated result.

Usage:
    gemstone-analyze [--limit 10] [--gems id1,id2] [--clear] [--env-file .env]
"""

import argparse
import logging
import sys
from typing import List, Optional

import requests

from gemstone_analysis.batch_runner import BatchOrchestrator
from gemstone_analysis.config import load_config
from gemstone_analysis.db_operations import get_db_connection
from gemstone_analysis.image_fetcher import ImageFetcher, RetryPolicy
from gemstone_analysis.logger import setup_logging
from gemstone_analysis.openai_client import VisionModelClient, create_openai_client
from gemstone_analysis.primary_image import PrimaryImageSelector
from gemstone_analysis.processor import GemstoneProcessor
from gemstone_analysis.prompt_loader import load_few_shot_examples, load_prompt
from gemstone_analysis.statistics import format_report

logger = logging.getLogger(__name__)


def parse_item_ids(value: str) -> List[str]:
    ids = [part.strip() for part in value.split(",") if part.strip()]
    if not ids:
        raise argparse.ArgumentTypeError("--gems needs at least one gemstone id")
    return ids


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("--limit must be a positive integer")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Analyze gemstone images with an OpenAI vision model")
    parser.add_argument(
        "--limit",
        type=positive_int,
        default=None,
        help="Maximum number of gemstones to analyze (default: all pending)",
    )
    parser.add_argument(
        "--gems",
        type=parse_item_ids,
        default=None,
        help="Comma-separated gemstone ids to analyze, analyzed or not",
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Delete existing analysis results (for --gems, or ALL gemstones) before the run",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Path to a .env file (default: ./.env)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (default: LOG_LEVEL from the environment, else INFO)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run one analysis batch. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.env_file)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    log_file = setup_logging(level=args.log_level or config.log_level, log_dir=config.log_dir)

    logger.info("=" * 70)
    logger.info("Multi-Image Gemstone Analysis")
    logger.info("=" * 70)
    logger.info(f"Model: {config.model_name}")
    if args.limit:
        logger.info(f"Limit: {args.limit} gemstones")
    if args.gems:
        logger.info(f"Specific gemstones: {', '.join(args.gems)}")
    if args.clear:
        logger.warning("Clear mode: existing analysis results will be deleted")

    try:
        prompt_template = load_prompt(config.prompt_file) if config.prompt_file else None
        few_shot_examples = load_few_shot_examples(config.few_shot_file) if config.few_shot_file else []
    except (FileNotFoundError, IOError, ValueError) as e:
        logger.error(f"Error loading prompt configuration: {e}")
        return 1

    try:
        connection = get_db_connection(config)
    except Exception:
        return 1

    session = requests.Session()
    try:
        fetcher = ImageFetcher(
            session=session,
            policy=RetryPolicy(
                max_attempts=config.image_fetch_attempts,
                backoff_seconds=config.image_fetch_backoff,
            ),
            timeout=config.image_fetch_timeout,
        )
        model_client = VisionModelClient(
            create_openai_client(config),
            config.model_name,
            timeout=config.request_timeout,
            few_shot_examples=few_shot_examples,
        )
        processor = GemstoneProcessor(
            fetcher,
            model_client,
            connection,
            primary_selector=PrimaryImageSelector(
                config.primary_image_policy, config.primary_image_min_score
            ),
            prompt_template=prompt_template,
        )
        orchestrator = BatchOrchestrator(processor, connection)

        try:
            statistics = orchestrator.run(limit=args.limit, item_ids=args.gems, clear=args.clear)
        except KeyboardInterrupt:
            logger.info("Operation cancelled by user")
            statistics = orchestrator.statistics
        except Exception as e:
            logger.error(f"Error running analysis batch: {e}", exc_info=True)
            return 1

        report = statistics.get_report()
        for line in format_report(report):
            logger.info(line)

        print(
            f"Analyzed: {report['summary']['analyzed_items']}, "
            f"failed: {report['summary']['failed_items']}, "
            f"cost: ${report['cost']['total_usd']:.4f}"
        )
        return 0
    finally:
        session.close()
        connection.close()
        logger.info(f"Log written to {log_file}")


if __name__ == "__main__":
    sys.exit(main())
