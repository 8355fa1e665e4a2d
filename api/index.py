import json
import logging
import os
import sys
from typing import Callable

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
API_DIR = os.path.join(BASE_DIR, "apps", "api")
if API_DIR not in sys.path:
    sys.path.append(API_DIR)

logger = logging.getLogger("coursepack.entry")


def _import_error_app(detail: str) -> Callable:
    """Bare ASGI app answering every HTTP request with the import error."""

    async def app(scope, receive, send):
        if scope["type"] != "http":
            return
        body = json.dumps({"detail": detail, "path": scope.get("path", "")}).encode("utf-8")
        await send(
            {
                "type": "http.response.start",
                "status": 503,
                "headers": [(b"content-type", b"application/json")],
            }
        )
        await send({"type": "http.response.body", "body": body})

    return app


def _build_app() -> Callable:
    try:
        from fastapi import FastAPI
    except Exception as exc:  # pragma: no cover
        detail = f"FastAPI import failed: {type(exc).__name__}: {exc}"
        logger.error("Course package API unavailable: %s", detail)
        return _import_error_app(detail)

    try:
        from coursepack.main import app as inner_app
    except Exception as exc:  # pragma: no cover
        detail = f"coursepack import failed: {type(exc).__name__}: {exc}"
        logger.error("Course package API unavailable: %s", detail)
        return _import_error_app(detail)

    outer = FastAPI(title="Course Package Builder API")
    # Serverless routing forwards /api/*; local runs hit the root.
    outer.mount("/api", inner_app)
    outer.mount("/", inner_app)
    return outer


app = _build_app()
