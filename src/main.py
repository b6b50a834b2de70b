import argparse
import asyncio
import sys
import logging

from src.config import load_settings
from src.domain.exceptions import SyncException
from src.infrastructure.github_client import GitHubRestClient
from src.infrastructure.database import RelationalRepository
from src.application.sync_service import IssueSyncService

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync GitHub issues into a local database.")
    parser.add_argument("owner", help="Repository owner login")
    parser.add_argument("repo", help="Repository name")
    parser.add_argument("--state", choices=["open", "closed", "all"], default="open",
                        help="Issue state to sync (default: open)")
    parser.add_argument("--issue", type=int, help="Sync a single issue by number instead of all issues")
    parser.add_argument("--migrate", action="store_true", help="Create tables and indexes before syncing")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        settings = load_settings()
    except SyncException as e:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
        logger.error(str(e))
        return 1

    # Configure logging
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    github_client = GitHubRestClient(token=settings.github_token, api_url=settings.github_api_url)
    storage = None

    try:
        storage = RelationalRepository(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
        sync_service = IssueSyncService(github_client=github_client, storage=storage)

        if args.migrate:
            await storage.create_schema()

        if args.issue is not None:
            await sync_service.sync_issue(args.owner, args.repo, args.issue)
        else:
            await sync_service.fetch_and_store_all_issues(args.owner, args.repo, args.state)
    except SyncException as e:
        logger.error(f"Sync failed: {e}")
        return 1
    finally:
        if storage is not None:
            await storage.close()

    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Sync interrupted by user. Exiting.")
        sys.exit(130)


if __name__ == "__main__":
    run()
