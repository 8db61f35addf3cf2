"""Run the gateway: ``python -m gravitygate``."""

import logging

import uvicorn

from gravitygate.config.settings import settings
from gravitygate.util.logger import resolve_level


def main() -> None:
    uvicorn.run(
        "gravitygate.core.gateway:app",
        host=settings.host,
        port=settings.port,
        log_level=logging.getLevelName(resolve_level(settings.log_level)).lower(),
    )


if __name__ == "__main__":
    main()
