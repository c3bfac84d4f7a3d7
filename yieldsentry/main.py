from contextlib import asynccontextmanager
import asyncio
import logging
import os

import colorlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from yieldsentry.config import build_settings, config
from yieldsentry.engine import YieldEngine
from yieldsentry.routers import opportunities, system

# Configure Colored Logging
handler = colorlog.StreamHandler()
handler.setFormatter(colorlog.ColoredFormatter(
    '%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    log_colors={
        'DEBUG': 'cyan',
        'INFO': 'green',
        'WARNING': 'yellow',
        'ERROR': 'red',
        'CRITICAL': 'red,bg_white',
    }
))
logger = colorlog.getLogger()
if not logger.handlers:
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if os.getenv("LOG_LEVEL", "").upper() == "DEBUG" else logging.INFO)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("🚀 YieldSentry Starting...")
    config.validate()

    engine = YieldEngine(build_settings(config))
    app.state.engine = engine
    await engine.start()

    # Warm the opportunity cache without blocking startup
    app.state.preload_task = asyncio.create_task(engine.aggregator.preload_cache())

    yield
    # Shutdown
    logger.info("🛑 Shutting down engine...")
    if not app.state.preload_task.done():
        app.state.preload_task.cancel()
    await engine.stop()


app = FastAPI(
    title="YieldSentry API",
    description="DeFi yield aggregation with source reliability tracking and risk analytics",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.ALLOWED_ORIGINS if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(opportunities.router)
app.include_router(system.router)


@app.get("/")
def root():
    return {"name": "YieldSentry", "version": VERSION, "status": "online"}


if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    reload = not config.is_production()
    uvicorn.run("yieldsentry.main:app", host="0.0.0.0", port=port, reload=reload)
