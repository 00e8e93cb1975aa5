from __future__ import annotations

from dotenv import load_dotenv
from fastapi import FastAPI

from .logging_utils import configure_logging
from .routes import router as outbox_router

load_dotenv()
configure_logging()

app = FastAPI(title="integration-outbox")
app.include_router(outbox_router)


@app.get("/healthz")
async def healthz():
    return {"ok": True}
