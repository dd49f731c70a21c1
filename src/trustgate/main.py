"""Command-line entry point: configure logging and tracing, then serve."""

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from trustgate.config import Settings, get_settings

_JSON_FORMAT = (
    '{"time": "%(asctime)s", "level": "%(levelname)s", '
    '"logger": "%(name)s", "message": "%(message)s"}'
)
_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"


def setup_logging(settings: Settings | None = None) -> None:
    """Send records to stdout in the configured format and level."""
    settings = settings or get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(_JSON_FORMAT if settings.log_format == "json" else _TEXT_FORMAT)
    )
    logging.basicConfig(level=settings.log_level.upper(), handlers=[handler])


def main() -> None:
    load_dotenv()

    settings = get_settings()
    setup_logging(settings)

    # Imported late so the tracer provider exists before issuers are constructed
    from trustgate.api.app import create_app
    from trustgate.telemetry import setup_telemetry, shutdown_telemetry

    setup_telemetry(settings)

    logging.getLogger(__name__).info(
        "trustgate %s listening on %s:%d for %s (enterprise=%s)",
        settings.version,
        settings.server_host,
        settings.server_port,
        settings.github_web_url,
        settings.is_enterprise_mode,
    )

    try:
        uvicorn.run(
            create_app(settings),
            host=settings.server_host,
            port=settings.server_port,
            log_level=settings.log_level.lower(),
        )
    finally:
        shutdown_telemetry()


if __name__ == "__main__":
    main()
