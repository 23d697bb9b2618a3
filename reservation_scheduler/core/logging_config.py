# reservation_scheduler/core/logging_config.py

import logging

from reservation_scheduler.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = None) -> None:
    """Configure the root logger once, at process start."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
    # APScheduler logs every job run at INFO; keep it quieter than our own logs
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("kafka").setLevel(logging.WARNING)
