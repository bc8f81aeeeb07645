#!/usr/bin/env python3
"""
Starlette middleware running the security pipeline in front of an app.

    app.add_middleware(SecurityPipelineMiddleware, pipeline=create_pipeline())

Handlers find the sanitized request on ``request.state``:
``request.state.security`` (the PipelineResult), ``sanitized_query`` and
``sanitized_body``.
"""

import json
import logging
import time
from typing import Awaitable, Callable, Optional
from urllib.parse import parse_qsl

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .pipeline import SecurityPipeline
from .request import Identity, RequestContext


logger = logging.getLogger(__name__)

IdentityResolver = Callable[[Request], Optional[Identity]]


class SecurityPipelineMiddleware(BaseHTTPMiddleware):
    """
    Adapter between Starlette requests and the framework-free pipeline.

    Args:
        app: Wrapped ASGI app
        pipeline: Configured SecurityPipeline
        session_cookie: Cookie carrying the session id used for CSRF
        identity_resolver: Optional callable decoding the caller identity
    """

    def __init__(
        self,
        app,
        pipeline: SecurityPipeline,
        session_cookie: str = "sid",
        identity_resolver: Optional[IdentityResolver] = None,
    ):
        super().__init__(app)
        self.pipeline = pipeline
        self.session_cookie = session_cookie
        self.identity_resolver = identity_resolver

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        context = await self.build_context(request)
        # Screening is CPU-bound; keep it off the event loop
        result = await run_in_threadpool(self.pipeline.handle, context)

        if not result.allowed:
            rejection = result.response
            return JSONResponse(
                rejection.body,
                status_code=rejection.status,
                headers=rejection.headers,
            )

        request.state.security = result
        request.state.sanitized_query = result.request.query
        request.state.sanitized_body = result.request.body

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        await run_in_threadpool(self.pipeline.after_response, result.request, response.status_code, duration)

        for name, value in result.headers.items():
            if name.lower() == "set-cookie":
                response.headers.append("set-cookie", value)
            else:
                response.headers[name] = value
        return response

    async def build_context(self, request: Request) -> RequestContext:
        """Translate a Starlette request into a RequestContext."""
        identity = self.identity_resolver(request) if self.identity_resolver else None
        cookies = dict(request.cookies)
        return RequestContext(
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
            headers=dict(request.headers),
            cookies=cookies,
            query=dict(request.query_params),
            body=await self._read_body(request),
            path_params=dict(request.path_params),
            identity=identity,
            session_id=cookies.get(self.session_cookie) or (identity.session_id if identity else None),
        )

    async def _read_body(self, request: Request):
        if request.method in ("GET", "HEAD", "OPTIONS"):
            return None

        raw = await request.body()
        if not raw:
            return None

        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type == "application/json" or content_type.endswith("+json"):
            try:
                return json.loads(raw)
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning(f"Unparseable JSON body from {request.client.host if request.client else 'unknown'}: {e}")
                return None
        if content_type == "application/x-www-form-urlencoded":
            return dict(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True))
        return None
