# ================== LOGURU LOGGER CONFIG =====================
import sys

from loguru import logger

from .config import settings

log_format = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

logger.remove()
logger.add(sys.stderr, colorize=True, format=log_format, level=settings.LOG_LEVEL)
if settings.LOG_FILE:
    logger.add(
        settings.LOG_FILE,
        rotation="100 MB",
        retention="10 days",
        compression="zip",
        serialize=True,
        level="DEBUG",
        enqueue=True,
    )

log = logger
