"""Logging configuration for the ocnectl package."""
import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

NOISY_LOGGERS = ('urllib3', 'kubernetes', 'oci')


def setup_logging(debug_mode: bool = False) -> None:
    """Configure the root logger based on debug mode."""
    log_level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )
    # Quiet the client libraries unless debugging
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug_mode else logging.WARNING)
