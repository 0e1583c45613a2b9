"""
server.py — Voice Engine · FastAPI Control Plane
================================================
Small HTTP surface the engine talks to once per session, plus the
runtime-config endpoints used by the CLI and local tooling.

Endpoints
---------
  POST /speech-token   Issue the streaming credential → {"apiKey": ...}
  GET  /health         Service liveness
  GET  /config         Current persisted VoiceEngineConfig
  PUT  /config         Merge-patch the persisted config

The credential lives only in this process's environment
(ASSEMBLYAI_API_KEY); clients never see it except through /speech-token.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from voice_engine.config import VoiceEngineConfig

load_dotenv()

log = logging.getLogger("voice_engine.server")

CONFIG_PATH = Path(os.getenv("VOICE_ENGINE_CONFIG", "voice_engine.json"))
API_KEY_ENV = "ASSEMBLYAI_API_KEY"

_started_at = time.monotonic()
_tokens_issued = 0


def _current_config() -> VoiceEngineConfig:
    return VoiceEngineConfig.load(CONFIG_PATH)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    log.info("event=server_start config=%s key_configured=%s", CONFIG_PATH, bool(os.getenv(API_KEY_ENV)))
    yield
    log.info("event=server_stopped tokens_issued=%d", _tokens_issued)


app = FastAPI(
    title="Voice Engine",
    version="1.0.0",
    description="Speech-token issuer and runtime config for the turn-taking engine",
    lifespan=_lifespan,
)

# Browser clients fetch the token directly (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/speech-token")
async def speech_token() -> JSONResponse:
    """Hand out the streaming credential for one session start."""
    global _tokens_issued
    api_key = os.getenv(API_KEY_ENV)
    if not api_key:
        log.error("event=speech_token_unconfigured env=%s", API_KEY_ENV)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "AssemblyAI API key not configured"},
        )
    _tokens_issued += 1
    log.info("event=speech_token_issued count=%d", _tokens_issued)
    return JSONResponse({"apiKey": api_key})


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe."""
    return JSONResponse({
        "status":         "ok",
        "key_configured": bool(os.getenv(API_KEY_ENV)),
        "tokens_issued":  _tokens_issued,
        "uptime_sec":     round(time.monotonic() - _started_at, 1),
    })


@app.get("/config")
async def get_config() -> dict:
    """Return the persisted config (defaults when no file exists yet)."""
    return _current_config().model_dump()


@app.put("/config")
async def put_config(patch: dict = Body(...)) -> dict:
    """
    Merge a partial update into the persisted config.

    Example:
        { "turn_taking": { "silence_threshold_sec": 3.0 } }
    """
    try:
        updated = _current_config().merge_patch(patch)
    except ValidationError as exc:
        log.warning("event=config_patch_rejected errors=%d", exc.error_count())
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc
    updated.save(CONFIG_PATH)
    log.info("event=config_patched keys=%s", ",".join(sorted(patch)))
    return updated.model_dump()


def run() -> None:
    """Entry point for ``voice-engine-server``."""
    import uvicorn

    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
