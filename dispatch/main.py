import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger
from tortoise import Tortoise

from dispatch.routers.booking import router as booking_router
from dispatch.routers.disputes import router as disputes_router
from dispatch.settings import db_url
from dispatch.sweeper import sweep_loop

TORTOISE_ORM = {
    "connections": {"default": db_url},
    "apps": {"models": {"models": ["dispatch.models"], "default_connection": "default"}},
    "use_tz": True,
    "timezone": "UTC",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    await Tortoise.init(config=TORTOISE_ORM)
    await Tortoise.generate_schemas(safe=True)

    stop_event = asyncio.Event()
    sweeper = asyncio.create_task(sweep_loop(stop_event))
    logger.info("Dispatch service started")
    try:
        yield
    finally:
        stop_event.set()
        await sweeper
        await Tortoise.close_connections()
        logger.info("Dispatch service stopped")


app = FastAPI(title="Agri Dispatch Service", lifespan=lifespan)
app.include_router(booking_router)
app.include_router(disputes_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "dispatch"}
