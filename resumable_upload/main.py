"""
Reference upload backend entry point
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api import router
from .api.endpoints import ServerSessionStore
from .core import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(store: Optional[ServerSessionStore] = None) -> FastAPI:
    """Build the backend app. Tests pass a store rooted in a temp directory."""
    upload_store = store or ServerSessionStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting upload backend...")
        logger.info(f"📁 Temp chunks: {upload_store.temp_dir}, completed files: {upload_store.completed_dir}")
        yield
        logger.info("🛑 Shutting down upload backend...")

    app = FastAPI(
        title=settings.APP_TITLE,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.upload_store = upload_store
    upload_store.ensure_dirs()

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.SERVER_HOST, port=settings.SERVER_PORT)


if __name__ == "__main__":
    run()
