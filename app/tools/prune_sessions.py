import argparse
import asyncio
import sys
from typing import List, Optional

from app.db.redis_client import RedisResource
from app.security.auth.session_manager import SessionManager
from app.utils.logger import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Remove session index entries whose session has expired."
    )
    parser.add_argument(
        "--user-id",
        type=str,
        default=None,
        help="Only prune this user's index. Without it every user is scanned.",
    )
    return parser


async def prune(manager: SessionManager, user_id: Optional[str] = None) -> int:
    if user_id:
        return await manager.cleanup_expired_sessions(user_id)
    return await manager.cleanup_all_users()


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Parse arguments and prune dangling session index entries.
    """
    args = build_parser().parse_args(argv)
    resource = RedisResource()
    try:
        client = await resource.connect()
        removed = await prune(SessionManager(client), args.user_id)
    except Exception as e:
        logger.error(f"An error occurred while pruning sessions: {e}", exc_info=True)
        return 1
    finally:
        await resource.close()

    logger.info(f"Pruned {removed} dangling session index entries.")
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    # To run this script:
    # python -m app.tools.prune_sessions [--user-id USER_ID]
    run()
