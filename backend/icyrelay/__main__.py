"""Run the relay with uvicorn: ``python -m icyrelay``."""

import uvicorn

from icyrelay.config.settings import RelaySettings
from icyrelay.main import configure_logging


def main() -> None:
    settings = RelaySettings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "icyrelay.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
