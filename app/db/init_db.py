"""Create the fleet schema outside the API process: ``python -m app.db.init_db [--reset]``"""

import argparse
import asyncio
import logging

from app.config import settings
from app.db.database import init_db, drop_db
from app.structured_logging import setup_logging

logger = logging.getLogger(__name__)


async def main(reset: bool = False):
    if reset:
        await drop_db()
        logger.warning("Dropped all fleet tables")
    await init_db()
    logger.info("Fleet schema ready at %s", settings.database_url)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create the Fleet Orchestrator tables")
    parser.add_argument("--reset", action="store_true", help="Drop existing tables first")
    args = parser.parse_args()

    setup_logging(settings.log_level, json_output=settings.log_json)
    asyncio.run(main(reset=args.reset))
