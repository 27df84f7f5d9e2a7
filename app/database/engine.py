from sqlmodel import create_engine, Session
from typing import Generator
import os

from app.core.config import settings

DATABASE_URL = settings.database_url

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        echo=True if os.getenv("DEBUG") else False,
        connect_args={"check_same_thread": False}
    )
else:
    engine = create_engine(
        DATABASE_URL,
        echo=True if os.getenv("DEBUG") else False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600
    )

def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
