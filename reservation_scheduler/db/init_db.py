# reservation_scheduler/db/init_db.py
from sqlalchemy.engine import Engine

from reservation_scheduler.db.base_class import Base

# Registers every table on Base.metadata
from reservation_scheduler import models  # noqa: F401


def init_db(engine: Engine) -> None:
    """Create missing tables. Existing tables are left untouched."""
    Base.metadata.create_all(bind=engine)
