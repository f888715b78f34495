"""Run the quiz API server. Run from project root: python web/run_api.py"""
import logging
import sys
from pathlib import Path

# Add project root to path so quiz imports work
_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_root))

import uvicorn

import config

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("quiz")


def main() -> None:
    try:
        config.check_required()
    except config.ConfigError as e:
        logger.critical("%s", e)
        sys.exit(1)
    uvicorn.run(
        "web.api.main:app",
        host="0.0.0.0",
        port=config.PORT,
        reload=not config.IS_PRODUCTION,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
