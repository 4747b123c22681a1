"""
HTTP pipeline for a bootstrapped indexer.

Every /api route requires the composed authorization policy. Version
negotiation reads ``api-version`` from the query string or a header.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from indexkit.auth import AuthRejected, Identity
from indexkit.bootstrap import BootstrapResult
from indexkit.versioning import (
    SUPPORTED_VERSIONS_HEADER,
    VERSION_PARAMETER,
    UnsupportedApiVersion,
    resolve_version,
    supported_versions_header,
)

logger = logging.getLogger("indexkit.api")


def require_identity(request: Request) -> Identity:
    """Default requirement for every API route."""
    policy = request.app.state.bootstrap.policy
    try:
        return policy.authorize(request.headers)
    except AuthRejected as e:
        logger.debug("Rejected %s %s: %s", request.method, request.url.path, e)
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": ", ".join(e.challenges)},
        )


router = APIRouter(prefix="/api", dependencies=[Depends(require_identity)])


@router.get("/index")
async def index_status(request: Request):
    """Expected schema of the synchronized index and the startup sync outcome."""
    result: BootstrapResult = request.app.state.bootstrap
    return {
        "name": result.index_definition.name,
        "fields": result.index_definition.to_payload()["fields"],
        "syncOutcome": result.sync_outcome.value,
        "apiVersion": str(request.state.api_version),
    }


def create_app(result: BootstrapResult) -> FastAPI:
    """Build the request pipeline around a completed bootstrap."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        result.registrar.deregister()

    app = FastAPI(
        title="Indexer AzureSearch API",
        description="Microservice for the search index feature.",
        version="v1",
        lifespan=lifespan,
    )
    app.state.bootstrap = result

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def api_version(request: Request, call_next):
        requested = request.query_params.get(VERSION_PARAMETER) or request.headers.get(VERSION_PARAMETER)
        try:
            request.state.api_version = resolve_version(requested)
        except UnsupportedApiVersion as e:
            return JSONResponse(
                status_code=400,
                content={"error": "UnsupportedApiVersion", "message": str(e)},
                headers={SUPPORTED_VERSIONS_HEADER: supported_versions_header()},
            )
        response = await call_next(request)
        response.headers[SUPPORTED_VERSIONS_HEADER] = supported_versions_header()
        return response

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "InternalServerError"})

    app.include_router(router)
    return app
