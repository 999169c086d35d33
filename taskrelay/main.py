"""FastAPI entry-point exposing the task relay."""
from __future__ import annotations

import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from taskrelay import runtime
from taskrelay.api.functions import router as functions_router
from taskrelay.api.health import router as health_router
from taskrelay.api.jobs import router as jobs_router
from taskrelay.api.messages import router as messages_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    await runtime.startup()
    yield
    await runtime.shutdown()


app = FastAPI(title="Task Relay", lifespan=lifespan)
app.include_router(health_router)
app.include_router(functions_router)
app.include_router(jobs_router)
app.include_router(messages_router)


def run() -> None:
    uvicorn.run(
        "taskrelay.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
