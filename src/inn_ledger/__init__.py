import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "inn_ledger.log"

# Console verbosity, e.g. INN_LEDGER_LOG_LEVEL=DEBUG while tracing a rollback.
CONSOLE_LEVEL_VARIABLE = "INN_LEDGER_LOG_LEVEL"


def _console_level() -> int:
    name = os.environ.get(CONSOLE_LEVEL_VARIABLE, "WARNING").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


def _configure_logging() -> logging.Logger:
    """Attach the rotating ledger log and the stderr handler once per process.

    The file keeps every committed mutation and rollback at INFO; the
    console only shows what the operator has to act on.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    console_level = _console_level()
    logger.setLevel(min(logging.INFO, console_level))
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        ledger_log = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        ledger_log.setLevel(logging.INFO)
        ledger_log.setFormatter(formatter)
        logger.addHandler(ledger_log)
    except OSError as exc:
        print(
            f"Warning: unable to open the ledger log at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    return logger


log = _configure_logging()
log.info("inn_ledger %s logging to '%s'", __version__, LOG_FILE)
