"""CLI command for provisioning the embedding cache schema"""

import logging
import sys
import time
from datetime import datetime

from paper_rerank.config import config
from paper_rerank.errors import StoreUnavailableError
from paper_rerank.services.vector_store import VectorStore


def setup_logging() -> None:
    """Configure logging for CLI (stdout for K8s)"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def main() -> int:
    """
    Main entry point for the migrate CLI command

    Returns:
        int: Exit code (0 for success, 1 for failure)
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    store = VectorStore(config.db_path)
    try:
        logger.info(f"Provisioning embedding cache schema at {config.db_path}")
        logger.info(f"Timestamp: {datetime.now().isoformat()}")

        start = time.time()
        store.ensure_schema_sync()

        logger.info(f"Schema ready in {time.time() - start:.2f}s")
        return 0
    except StoreUnavailableError as e:
        logger.error(f"Migration failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
