import logging

logger = logging.getLogger("kdm")

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(message)s"

# The kubernetes client logs every request through these at DEBUG
_CLIENT_LOGGERS = ("kubernetes", "urllib3")


def setup_logger(verbose: bool = False, format: str = "%(message)s") -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(format))
    logger.addHandler(console)

    # Client request logs are only useful when debugging
    for name in _CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)


setup_logger()
