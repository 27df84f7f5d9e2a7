from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

# Database migrations are managed exclusively via Alembic
from app.routers import newsletter
from app.core.config import settings

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # NOTE: Database migrations are managed by Alembic exclusively.
    # Run: alembic upgrade head
    logger.info("Starting application...")

    # Initialize and start background tasks
    from app.core.background_tasks import BackgroundTaskManager
    import app.core.background_tasks as background_tasks_module
    background_tasks_module.background_task_manager = BackgroundTaskManager()
    await background_tasks_module.background_task_manager.start()
    logger.info("✓ Background tasks started")

    logger.info("Application startup complete")

    yield

    # Cleanup on shutdown
    logger.info("Application shutdown initiated...")

    if background_tasks_module.background_task_manager:
        await background_tasks_module.background_task_manager.stop()
        logger.info("✓ Background tasks stopped")

    logger.info("Application shutdown complete")

app = FastAPI(
    title="MWM Newsletter Backend",
    description="Bilingual newsletter subscriptions and campaign delivery",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.CLIENT_URL,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

newsletter.register_exception_handlers(app)
app.include_router(newsletter.router)

@app.get("/")
def read_root():
    return {
        "message": "Welcome to the MWM Newsletter API",
        "version": "1.0.0",
        "modules": {
            "subscriptions": "/newsletter/subscribe, /newsletter/unsubscribe, /newsletter/verify/{token}",
            "subscribers": "/newsletter/subscribers/* (admin)",
            "campaigns": "/newsletter/campaigns/* (admin)"
        },
        "docs": "/docs",
        "redoc": "/redoc"
    }

@app.get("/health")
def health_check():
    return {"status": "healthy"}
