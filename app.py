"""
PR profile bot
==============
A small web service (FastAPI) that listens for GitHub `issue_comment` webhooks
on "/". When someone on the allow-list comments exactly `profile` on a pull
request:
  1) Look up the pull request to find its head commit and clone URL.
  2) Build that commit in the build container, in a throwaway directory.
  3) Upload the APK to the profiling service and wait (up to 20 minutes).
  4) Post the per-scenario timings (or what went wrong) as a PR comment.

The request handler only decodes the body and queues the run on a small
worker pool; the HTTP answer is always "Success" and says nothing about how
the run went.

There is also a "/health" endpoint for quick health checks.

Configuration comes from env vars (a local .env is loaded if present):
GITHUB_TOKEN, PROFILER_API_TOKEN, PROFILERS_FILE, MAX_CONCURRENT_RUNS,
LOGLEVEL, HOST, PORT, plus the build/profiler knobs read in config.py.
"""

import os
import json
import time
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from dotenv import load_dotenv
load_dotenv(dotenv_path=".env")  # Load variables from .env if present (handy for local dev)

from config import ServerConfig, int_env, load_server_config
from pipeline import run_profile_pipeline

# ---------------- App / Logging ----------------
app = FastAPI(title="PR Profile Bot", version="1.0.0")
log = logging.getLogger("webhook")
logging.basicConfig(level=os.getenv("LOGLEVEL", "INFO"))
BOOT_TS = time.time()

# ---------------- Config ----------------
SERVER_CONFIG: ServerConfig = load_server_config()
MAX_CONCURRENT_RUNS = max(1, int_env("MAX_CONCURRENT_RUNS", 2))

RUNS = ThreadPoolExecutor(max_workers=MAX_CONCURRENT_RUNS, thread_name_prefix="profile-run")

# ---------------- Helpers ----------------

def _mask(s: str, keep: int = 4) -> str:
    if not s:
        return ""
    return s[:keep] + "…"


def parse_body_bytes(body: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Decode a webhook body: either `payload=<url-encoded JSON>` (the form
    delivery) or raw JSON when the content type says so.
    Raises ValueError if there is no JSON object to be had.
    """
    text = body.decode("utf-8")
    if (content_type or "").split(";")[0].strip().lower() == "application/json":
        raw = text
    else:
        fields = parse_qs(text, keep_blank_values=True)
        if "payload" not in fields:
            raise ValueError("form body has no payload field")
        raw = fields["payload"][0]
    try:
        parsed = json.loads(raw)
    except RecursionError as e:
        raise ValueError("payload is nested too deeply to decode") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"payload is a JSON {type(parsed).__name__}, not an object")
    return parsed


def _run_logged(event: Dict[str, Any], config: ServerConfig) -> None:
    try:
        run_profile_pipeline(event, config)
    except Exception:
        log.exception("profile run crashed")


def dispatch_run(event: Dict[str, Any]) -> Future:
    """Queue one pipeline run; returns immediately."""
    return RUNS.submit(_run_logged, event, SERVER_CONFIG)

# ---------------- Startup / Health ----------------

@app.on_event("startup")
def _startup_log_routes() -> None:
    from starlette.routing import Route
    for r in app.router.routes:
        if isinstance(r, Route):
            log.info("route registered: %s methods=%s", r.path, sorted(r.methods))
    log.info("allowed commenters: %d, github token: %s, profiler token: %s, workers: %d",
             len(SERVER_CONFIG.allowed_commenters),
             _mask(SERVER_CONFIG.source_api_token) or "(none)",
             _mask(SERVER_CONFIG.profiling_api_token) or "(none)",
             MAX_CONCURRENT_RUNS)


@app.on_event("shutdown")
def _shutdown_runs() -> None:
    # in-flight runs cannot be cancelled; queued ones are dropped
    RUNS.shutdown(wait=False, cancel_futures=True)


@app.get("/health", include_in_schema=False)
def health() -> Dict[str, Any]:
    return {
        "ok": True,
        "service": "pr-profile-bot",
        "uptime_s": int(time.time() - BOOT_TS),
        "allowed_commenters": len(SERVER_CONFIG.allowed_commenters),
    }

# ---------------- Webhook ----------------

@app.post("/", response_class=PlainTextResponse)
async def webhook(request: Request) -> str:
    body: bytes = await request.body()
    log.info("notification received len=%d event=%s delivery=%s",
             len(body), request.headers.get("X-GitHub-Event"), request.headers.get("X-GitHub-Delivery"))

    try:
        event = parse_body_bytes(body, request.headers.get("content-type"))
    except ValueError as e:
        # UnicodeDecodeError and JSONDecodeError are both ValueErrors
        log.error("could not parse the body of the notification: %s", e)
    else:
        dispatch_run(event)
        log.info("profile run queued")

    return "Success"


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "localhost"), port=int(os.getenv("PORT", "8000")))
