import os
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, APIRouter  # type: ignore[import-not-found]
from .config import config
from .logging_config import setup_logging
from .routers import maa, notification, schedule


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    from .services.orchestration.schedule_manager import schedule_manager

    Path(config.SYSTEM.USER_CONFIG_DIR).mkdir(parents=True, exist_ok=True)
    schedule_manager.start()
    try:
        yield
    finally:
        schedule_manager.stop()


app = FastAPI(
    title="La Pluma Server",
    description="Scheduler and control API for MAA task flows.",
    version="0.1.0",
    lifespan=lifespan
)

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(maa.router)
v1_router.include_router(schedule.router)
v1_router.include_router(notification.router)
app.include_router(v1_router)


@app.get("/")
async def root():
    return {"message": "La Pluma Server is running"}


def run() -> None:
    uvicorn.run(
        "pluma_server.main:app",
        host=os.environ.get("PLUMA_HOST", "0.0.0.0"),
        port=int(os.environ.get("PLUMA_PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    run()
