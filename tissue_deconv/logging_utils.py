# tissue_deconv/logging_utils.py

import logging

PACKAGE_LOGGER = "tissue_deconv"

logging.getLogger(PACKAGE_LOGGER).addHandler(logging.NullHandler())


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Module logger; records propagate to the package root logger."""
    return logging.getLogger(name)


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Attach a stream handler to the package root logger, for scripts.

    Calling it more than once does not add duplicate handlers.
    """
    root = logging.getLogger(PACKAGE_LOGGER)
    root.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)s | %(levelname)s | %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return root
