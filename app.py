"""
Plan runner: push endpoint + health check.

A push delivery carries one base64-encoded plan request. For each one we:
  1) decode and validate it,
  2) check out the PR head commit into a throwaway directory,
  3) run `tofu init` / `tofu plan` / `tofu show` in the requested subdirectory,
  4) post the rendered plan as a sticky PR comment (one per plan id),
  5) patch that same comment with per-stage timings.

The push endpoint always answers 204: failures are logged, never turned into
an HTTP error, so the upstream queue does not redeliver. Work runs on the
server's thread pool; one request never shares state with another.
"""

import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from config import load_settings
from handler import handle_push
from logging_utils import configure_logging, log_event

# ---------------- App / Logging ----------------
SETTINGS = load_settings()
configure_logging(SETTINGS.log_level)
log = logging.getLogger("runner")

app = FastAPI(title="Plan Runner", version="1.0.0")

# ---------------- Startup / Health ----------------

@app.on_event("startup")
def _startup_log_routes() -> None:
    from starlette.routing import Route
    for r in app.router.routes:
        if isinstance(r, Route):
            log_event(log, logging.INFO, "route registered", path=r.path, methods=sorted(r.methods or []))
    log_event(log, logging.INFO, "runner (push) listening", port=SETTINGS.port,
              subscription=SETTINGS.subscription)


@app.get("/healthz", include_in_schema=False)
def healthz() -> PlainTextResponse:
    return PlainTextResponse("ok")

# ---------------- Push delivery ----------------

async def pubsub_push(request: Request) -> Response:
    body: bytes = await request.body()
    # Blocking pipeline: keep it off the event loop.
    await run_in_threadpool(handle_push, body, SETTINGS)
    return Response(status_code=204)


app.add_api_route(SETTINGS.push_path, pubsub_push, methods=["POST"])


def main() -> None:
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=SETTINGS.port, log_config=None)


if __name__ == "__main__":
    main()
