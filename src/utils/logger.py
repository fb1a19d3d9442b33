import os
import sys
from pathlib import Path

from loguru import logger


def setup_logger(
    *,
    json_logs: bool = False,
    level: str = "INFO",
    worker_name: str | None = None,
    log_dir: str | Path = "logs",
) -> str:
    """Configure loguru for one enricher process. Returns the worker tag.

    Several workers usually share a host and a log directory, so every line
    carries a worker tag (``worker_name`` or ``pid<N>``) and each process
    writes its own DEBUG file: ``<log_dir>/enricher_<worker>_<date>.log``.
    Console level controlled by LOG_LEVEL env (default: ``level``).
    """
    console_level = os.getenv("LOG_LEVEL", level).upper()
    worker = worker_name or f"pid{os.getpid()}"

    logger.remove()
    logger.configure(extra={"worker": worker})

    if json_logs:
        logger.add(sys.stdout, serialize=True, level=console_level)
    else:
        logger.add(
            sys.stdout,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<magenta>{extra[worker]}</magenta> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
                "<level>{message}</level>"
            ),
            level=console_level,
            colorize=True,
        )

    logger.add(
        str(Path(log_dir) / f"enricher_{worker}_{{time:YYYY-MM-DD}}.log"),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[worker]} | {name}:{function} - {message}",
        rotation="50 MB",
        retention="7 days",
        compression="gz",
        level="DEBUG",
        serialize=json_logs,
    )
    return worker
