import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from inbox_triage.config import settings
from inbox_triage.logging_config import setup_logging
from inbox_triage.routers import inbox

setup_logging(settings.log_level)

app = FastAPI(
    title="Inbox Triage API",
    description="Conversation lifecycle classifier and ambiguity interpreter",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(inbox.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
