"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from converter.api.routes import router
from converter.config import CORS_ORIGINS, MAX_WORKERS, logger as config_logger
from converter.conversion.scheduler import WorkerPoolScheduler
from converter.inbox import TaskInbox

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.inbox = TaskInbox()
    app.state.scheduler = WorkerPoolScheduler(size=MAX_WORKERS, listener=app.state.inbox)
    config_logger.info("Converter API started")
    yield
    config_logger.info("Converter API shutting down")
    app.state.scheduler.shutdown(wait=False)


app = FastAPI(
    title="Color-managed Image Converter API",
    description="Convert JPEG/PNG to AVIF, WebP, JPEG, PNG or TIFF with sRGB/Adobe RGB color management.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from converter.config import HOST, PORT
    uvicorn.run("converter.main:app", host=HOST, port=PORT, reload=True)
