import logging
import os

# Chatty at INFO; they log every request and token refresh.
_LIBRARY_LOGGERS = ("httpx", "httpcore", "urllib3", "google.auth", "google_genai")


def configure_logging(level: str | None = None, *, quiet_libraries: bool = True) -> None:
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s: %(name)s: %(message)s"
    )
    if quiet_libraries:
        floor = max(logging.WARNING, logging.getLogger().getEffectiveLevel())
        for name in _LIBRARY_LOGGERS:
            logging.getLogger(name).setLevel(floor)
