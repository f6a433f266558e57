from __future__ import annotations

from src.db.models import Base
from src.db.session import get_engine


def init_db() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
