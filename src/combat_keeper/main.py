"""
Entry point for the combat-keeper mutator server.
"""

import logging

import uvicorn
from dotenv import load_dotenv

from .config import EngineConfig
from .server.app import create_app

logger = logging.getLogger("combat-keeper")


def main() -> None:
    """Run the authoritative mutator over HTTP."""
    if not load_dotenv():
        logger.debug("No .env file found, using environment and defaults")
    config = EngineConfig.from_env()

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"combat-keeper listening on {config.host}:{config.port}")
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
