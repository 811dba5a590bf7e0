"""
Run the API with uvicorn: `python -m codequest`.

Serverless hosts import `codequest.main:app` directly and never run this.
"""

import logging

import uvicorn

from codequest.config import settings
from codequest.main import setup_logging

logger = logging.getLogger("codequest")


def main() -> None:
    setup_logging(settings.log_level)
    if settings.serverless:
        logger.info("Serverless mode: the host serves codequest.main:app, not starting uvicorn")
        return
    uvicorn.run(
        "codequest.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,  # keep our logging configuration
        reload=settings.is_development,
    )


if __name__ == "__main__":
    main()
