# Import all models to ensure they are registered with SQLModel
from app.models import newsletter
from app.schemas import newsletter as schemas
from app.core import config, deps
from app.database import engine
from app.routers import newsletter as newsletter_router

__all__ = [
    "newsletter",
    "schemas",
    "config",
    "deps",
    "engine",
    "newsletter_router",
]
