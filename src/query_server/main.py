"""Entry point: configure logging and serve the read API with uvicorn."""

import uvicorn

from common.pylogger import configure_logging, get_python_logger
from query_server.settings import settings


def main() -> None:
    configure_logging(settings.log_level, settings.log_format)
    logger = get_python_logger(__name__)
    logger.info(f"Starting trace reader on {settings.host}:{settings.port} against {settings.url}")
    uvicorn.run(
        "query_server.api:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
