import sys
from datetime import datetime
from pathlib import Path

from loguru import logger as _logger


PROJECT_ROOT = Path(__file__).resolve().parents[1]


_print_level = "INFO"


def define_log_level(
    print_level: str = "INFO", logfile_level: str = "DEBUG", name: str | None = None
):
    """Adjust the log level to above level.

    One stderr sink at ``print_level`` and one file sink under
    ``<project root>/logs`` at ``logfile_level``.
    """
    global _print_level
    _print_level = print_level

    current_date = datetime.now()
    formatted_date = current_date.strftime("%Y%m%d%H%M%S")
    log_name = f"{name}_{formatted_date}" if name else formatted_date

    log_dir: Path = PROJECT_ROOT / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    _logger.remove()
    _logger.add(sys.stderr, level=print_level)
    _logger.add(log_dir / f"{log_name}.log", level=logfile_level)
    return _logger


logger = define_log_level()
