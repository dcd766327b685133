import sys
from pathlib import Path

from loguru import logger

from yari.config.schema import Config

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | <cyan>{name}</cyan> - {message}"


def configure_logger(config: Config, console: bool = True):
    """
    Configure loguru sinks from settings.

    The file sink always follows `logging.file_enabled`; `console=False`
    only silences stderr, so a quiet CLI run still leaves a log behind.
    """
    logger.remove()

    if console:
        logger.add(sys.stderr, level=config.logging.level, format=CONSOLE_FORMAT)

    if config.logging.file_enabled:
        path = Path(config.logging.file_path).expanduser()
        logger.add(
            path,
            rotation=config.logging.rotation,
            retention=config.logging.retention,
            level=config.logging.level,
            enqueue=True,  # Tool calls log from many tasks at once
        )
