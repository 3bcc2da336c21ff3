import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "REPAIR_DESK_LOG_DIR"
LOG_DIR = Path(os.environ.get(LOG_DIR_ENV, PROJECT_ROOT / ".logs")).expanduser()
LOG_FILE_NAME = "repair_desk.log"


def _configure_logging(name: str = __name__, log_dir: Path = LOG_DIR) -> logging.Logger:
    """Attach a rotating file handler under ``log_dir`` and a stderr handler.

    The log directory defaults to ``.logs`` beside the project and can be moved
    with the ``REPAIR_DESK_LOG_DIR`` environment variable. Calling this again
    for a logger that already has handlers changes nothing.
    """

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = log_dir / LOG_FILE_NAME
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        # Orders can still be processed without a log file.
        print(
            f"Warning: unable to initialize log file at '{log_file}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Repair Desk logging to '%s'", LOG_DIR / LOG_FILE_NAME)
