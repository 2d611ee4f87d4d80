"""CLI command for resyncing a knowledge source"""

import argparse
import asyncio
import logging
import sys

from knowledge_pipeline.exceptions import SourceNotFoundError
from knowledge_pipeline.services.knowledge_api import KnowledgeAPI


def setup_logging() -> None:
    """Configure logging for CLI (stdout for K8s)"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resync one knowledge source")
    parser.add_argument("source_id", help="Knowledge source id")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-chunk and re-embed even if the content is unchanged",
    )
    parser.add_argument("--db-path", default=None, help="Override the database path")
    return parser.parse_args(argv)


async def run(source_id: str, force: bool = False, db_path: str | None = None) -> bool:
    """Resync a source and report whether the run succeeded"""
    logger = logging.getLogger(__name__)
    api = KnowledgeAPI.create(db_path=db_path)
    await api.initialize()
    try:
        result = await api.resync_knowledge_source(source_id, force=force)
    finally:
        await api.close()

    if result.success:
        logger.info(
            f"Resync {result.outcome.value}: {result.chunks_created} chunks "
            f"in {result.duration_seconds:.2f}s"
        )
    else:
        for error in result.errors:
            logger.error(f"Resync failed: {error}")
    return result.success


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for resync CLI command

    Returns:
        int: Exit code (0 for success, 1 for failure)
    """
    args = parse_args(argv)
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        logger.info(f"Starting resync of source {args.source_id}")
        return 0 if asyncio.run(run(args.source_id, args.force, args.db_path)) else 1
    except SourceNotFoundError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
