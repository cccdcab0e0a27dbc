# main.py
import logging

from contextlib import asynccontextmanager

from fastapi import FastAPI

from insights_engine.db import init_db
from insights_engine.routes import router as insights_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_db()
    yield

app = FastAPI(title="Church Insights Engine", version="1.0.0", lifespan=lifespan)

# Healthcheck
@app.get("/healthz")
def healthcheck():
    return {"ok": True}

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(insights_router)
