#!/usr/bin/env python
"""Script to move expired active carts to the abandoned state.

Carts that nobody touched for ``CART_EXPIRY_HOURS`` stop being returned by
cart resolution once swept; the next request for that user or guest gets a
fresh cart.

Usage:
    python scripts/sweep_abandoned_carts.py

Intended to run on a schedule (cron, Cloud Scheduler). Safe to run
repeatedly and concurrently: the transition is a single conditional UPDATE.
"""

import logging
import sys
from pathlib import Path

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from marketplace.core.cache import get_cache
from marketplace.core.database import get_session_factory
from marketplace.services.cart_service import CartService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point for the sweep script."""
    logger.info("Sweeping abandoned carts...")

    try:
        with get_session_factory()() as db:
            abandoned = CartService(db, get_cache()).expire_abandoned_carts()
    except Exception as e:
        logger.error("Cart sweep failed: %s", e, exc_info=True)
        sys.exit(1)

    logger.info("Cart sweep complete: %d carts abandoned", abandoned)


if __name__ == "__main__":
    main()
