import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from smarthome.api import router
from smarthome.core import Base, engine, settings
from smarthome.models import DocumentNode  # noqa: F401
from smarthome.services import runtime
from smarthome.utils.logger import setup_logging

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    Base.metadata.create_all(bind=engine)
    runtime.start()
    yield
    runtime.stop()


app = FastAPI(
    title="SmartHome Cloud Control API",
    version="0.1.0",
    description="Shared home state, durable device timers and hardware presence.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "SmartHome backend is running", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
