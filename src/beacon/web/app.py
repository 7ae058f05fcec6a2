"""Request-time serving of routed endpoints.

Everything the orchestrator routed is answered by one catch-all route. Every
response carries ``X-Powered-By`` so the prober can tell application-served
responses from files the web server returned on its own.
"""

from __future__ import annotations

import logging
from typing import Iterable

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from beacon.domain.models import EndpointDescriptor
from beacon.orchestrator.engine import EndpointOrchestrator

logger = logging.getLogger(__name__)

POWERED_BY = "beacon"


def create_app(orchestrator: EndpointOrchestrator, descriptors: Iterable[EndpointDescriptor] = ()) -> FastAPI:
    app = FastAPI(title="beacon", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.orchestrator = orchestrator
    orchestrator.load_routes(descriptors)

    router = APIRouter()

    @router.api_route("/{full_path:path}", methods=["GET", "HEAD", "OPTIONS"], include_in_schema=False)
    def dispatch(full_path: str, request: Request) -> Response:
        resp = orchestrator.handle_request(request.method, "/" + full_path)
        if resp is None:
            return PlainTextResponse("Not Found", status_code=404)
        return Response(content=resp.body, status_code=resp.status_code, headers=resp.headers)

    app.include_router(router)

    @app.middleware("http")
    async def powered_by(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Powered-By"] = POWERED_BY
        return response

    return app
