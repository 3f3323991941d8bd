import asyncio
import logging
import sys

from awesome_index.application.loader import Loader
from awesome_index.application.memory_cache import MemoryCache
from awesome_index.application.refresh_queue import RefreshQueue
from awesome_index.application.source_loader import SourceLoader
from awesome_index.config import load_settings
from awesome_index.domain.exceptions import AwesomeIndexException, ConfigurationException
from awesome_index.infrastructure.database import SqlStore
from awesome_index.infrastructure.github_client import GitHubClient

logger = logging.getLogger(__name__)

POPULAR_COUNT = 10


async def main():
    try:
        settings = load_settings()
    except ConfigurationException as e:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
        logger.error(str(e))
        sys.exit(1)

    # Configure logging
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    if not settings.github_token:
        logger.warning("GITHUB_TOKEN is not set; GitHub will apply anonymous rate limits.")

    # Initialize the GitHub client and the store
    github_client = GitHubClient(token=settings.github_token)
    store = SqlStore(db_url=settings.database_url)

    loader = Loader(
        store=store,
        source=SourceLoader(github_client),
        cache=MemoryCache(),
        queue=RefreshQueue(
            interval_seconds=settings.refresh_interval_seconds,
            max_attempts=settings.refresh_max_attempts,
            retry_base_seconds=settings.refresh_retry_base_seconds,
        ),
        memory_ttl_seconds=settings.memory_cache_ttl_seconds,
        document_refresh_ttl_seconds=settings.document_refresh_ttl_seconds,
    )

    try:
        await store.init_schema()
        loader.start()

        for entity_id in settings.seed_lists:
            try:
                view = await loader.get_aggregate_view(entity_id, allow_source_refresh=True)
                logger.info(
                    f"Loaded {entity_id}: {len(view.resolved)} resolved, "
                    f"{view.unresolved_count} unresolved, {len(view.not_found)} not found."
                )
            except AwesomeIndexException as e:
                logger.error(f"Could not load {entity_id}: {e}")

        for view in await loader.list_popular(POPULAR_COUNT):
            logger.info(f"{view.document.metadata.stars:>8} stars  {view.document.id.full_name}")

        # Keep refreshing in the background until interrupted
        await loader.join()
    finally:
        await loader.stop()
        await github_client.close()
        await store.dispose()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting gracefully.")
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
