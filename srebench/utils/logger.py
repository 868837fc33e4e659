import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "all"

_initialized = False


def init_logger(level: int | str = logging.INFO, log_dir: Path | None = None) -> logging.Logger:
    """Configure the ``all`` logger hierarchy once.

    Every component logs under ``all.srebench.<component>``. Records go to stderr through rich,
    and to ``<log_dir>/srebench_<timestamp>.log`` when a log directory is given.
    """
    global _initialized

    logger = logging.getLogger(ROOT_LOGGER)
    if _initialized:
        logger.setLevel(level)
        return logger

    logger.setLevel(level)
    logger.propagate = False

    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%m-%d_%H-%M-%S")
        file_handler = logging.FileHandler(log_dir / f"srebench_{stamp}.log")
        file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(file_handler)

    # kubernetes/urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)

    _initialized = True
    return logger
