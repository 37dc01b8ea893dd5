"""Store JSON API (aiohttp.web) + health endpoint.

    GET       /health
    POST      /api/intake/duplicate-check
    GET|POST  /api/intake/identity-search
    POST      /api/intake/drafts
    GET       /api/intake/drafts/{draft_id}
    POST      /api/intake/finalize

Any object implementing ``intake.api.Store`` can back the routes; the
service entry point uses ``intake.db.PgStore``.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from aiohttp import web
from pydantic import ValidationError

from intake.api import Store
from intake.errors import CustomerConflict, DraftNotFound, DraftSuperseded, StoreUnavailable
from intake.models import (
    DraftSaveRequest,
    DraftSaveResponse,
    DuplicateCheckRequest,
    FinalizeRequest,
    IdentitySearchRequest,
)

logger = logging.getLogger(__name__)

STORE = web.AppKey("store", Store)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as exc:
        return _error(400, "Invalid request body", details=[e["msg"] for e in exc.errors()])
    except ValueError as exc:
        # malformed JSON
        return _error(400, f"Invalid request body: {exc}")
    except DraftNotFound as exc:
        return _error(404, str(exc))
    except (DraftSuperseded, CustomerConflict) as exc:
        return _error(409, str(exc))
    except StoreUnavailable as exc:
        logger.warning("%s %s: store unavailable: %s", request.method, request.path, exc)
        return _error(503, str(exc))
    except Exception as exc:
        logger.error("Unhandled error on %s %s: %s", request.method, request.path, exc, exc_info=True)
        return _error(500, "Internal server error")


async def health(_r: web.Request) -> web.Response:
    return web.Response(text="ok")


async def duplicate_check(request: web.Request) -> web.Response:
    body = DuplicateCheckRequest.model_validate(await request.json())
    flags = await request.app[STORE].duplicate_check(body.identification, body.email, body.phone)
    return web.json_response(flags.to_json())


async def identity_search(request: web.Request) -> web.Response:
    if request.method == "GET":
        payload: Any = dict(request.query)
    else:
        payload = await request.json()
    body = IdentitySearchRequest.model_validate(payload)
    result = await request.app[STORE].identity_search(body.type, body.identifier)
    return web.json_response(result.to_json())


async def save_draft(request: web.Request) -> web.Response:
    body = DraftSaveRequest.model_validate(await request.json())
    draft_id = await request.app[STORE].save_draft(body.form_state, body.draft_id, body.step)
    return web.json_response(DraftSaveResponse(draft_id=draft_id).to_json())


async def load_draft(request: web.Request) -> web.Response:
    draft = await request.app[STORE].load_draft(request.match_info["draft_id"])
    return web.json_response(draft.to_json())


async def finalize(request: web.Request) -> web.Response:
    body = FinalizeRequest.model_validate(await request.json())
    result = await request.app[STORE].finalize(body.form_state, body.draft_id)
    return web.json_response(result.to_json())


def create_app(store: Store) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[STORE] = store
    app.router.add_get("/", health)
    app.router.add_get("/health", health)
    app.router.add_post("/api/intake/duplicate-check", duplicate_check)
    app.router.add_get("/api/intake/identity-search", identity_search)
    app.router.add_post("/api/intake/identity-search", identity_search)
    app.router.add_post("/api/intake/drafts", save_draft)
    app.router.add_get("/api/intake/drafts/{draft_id}", load_draft)
    app.router.add_post("/api/intake/finalize", finalize)
    return app


async def start_server(store: Store, port: int) -> web.AppRunner:
    runner = web.AppRunner(create_app(store))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    return runner
