"""python -m meetstream: serve the API with uvicorn."""
import uvicorn

from meetstream.config import get_settings
from meetstream.logging_setup import setup_logging


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    uvicorn.run("meetstream.main:app", host=settings.API_HOST, port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
