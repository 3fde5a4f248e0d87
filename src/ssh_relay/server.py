"""Service entry point: settings from the environment, auto-start, HTTP."""

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .common.exceptions import ConfigurationError
from .common.logging import get_logger, setup_logging
from .common.settings import RelaySettings
from .tunnels import JsonFileConfigSource, TunnelRegistry

logger = get_logger(__name__)


def build_service(settings: RelaySettings) -> tuple[TunnelRegistry, FastAPI]:
    """Create the registry, start flagged tunnels and bind the HTTP app.

    A missing or unreadable tunnels file is logged; the service still starts
    with no tunnels.
    """
    registry = TunnelRegistry(settings=settings)

    if settings.tunnels_file:
        try:
            configs = JsonFileConfigSource(settings.tunnels_file).auto_start()
        except ConfigurationError as e:
            logger.error("Could not load tunnel configurations", error=str(e))
        else:
            registry.start_auto(configs)

    return registry, create_app(registry)


def main() -> None:
    settings = RelaySettings()
    setup_logging(level=settings.log_level, json_format=settings.log_json)

    registry, app = build_service(settings)
    logger.info("Starting relay service", host=settings.host, port=settings.port)
    try:
        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    finally:
        registry.shutdown()


if __name__ == "__main__":
    main()
