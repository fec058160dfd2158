"""Process-wide logging setup for the API server and the batch CLI."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s  %(name)s  %(message)s"


def configure_logging(log_level: str = "INFO") -> None:
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    # The Gemini SDK is chatty at INFO.
    logging.getLogger("google").setLevel(max(numeric_level, logging.WARNING))
