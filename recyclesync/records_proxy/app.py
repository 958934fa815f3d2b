"""FastAPI application for the records proxy service."""

import logging
import threading
from typing import Dict

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from recyclesync.config import LOG_FORMAT

from .auth import verify_token
from .config import Settings
from .models import (
    CollectionResponse,
    ErrorResponse,
    HealthResponse,
    PreconditionFailedResponse,
    WriteCollectionRequest,
    WriteResponse,
)
from .storage import PreconditionFailedError, S3CollectionStorage, StorageError

logger = logging.getLogger(__name__)

_storage_lock = threading.Lock()


def get_storage(request: Request) -> S3CollectionStorage:
    """Storage attached to the app, created on first use."""
    state = request.app.state
    if state.storage is None:
        with _storage_lock:
            if state.storage is None:
                state.storage = S3CollectionStorage(state.settings)
    return state.storage


async def health_check(storage: S3CollectionStorage = Depends(get_storage)):
    """
    Health check endpoint (no authentication required).

    Returns service health and storage connectivity status.
    """
    if storage.health_check():
        return HealthResponse(status="ok", storage="connected")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "error", "storage": "disconnected"},
    )


async def read_collection(
    owner_id: str,
    user_info: Dict = Depends(verify_token),
    storage: S3CollectionStorage = Depends(get_storage),
):
    """
    Read an owner's collection.

    Returns the items keyed by record id with the collection version.
    A collection that was never written is returned empty at version 0.
    """
    try:
        items, version = storage.read_collection(owner_id)
    except StorageError as e:
        logger.error(f"Storage error reading {owner_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Storage error",
        )
    return CollectionResponse(owner_id=owner_id, version=version, items=items)


async def write_collection(
    owner_id: str,
    body: WriteCollectionRequest,
    user_info: Dict = Depends(verify_token),
    storage: S3CollectionStorage = Depends(get_storage),
    if_match_version: int | None = Header(default=None, alias="If-Match-Version"),
):
    """
    Replace an owner's collection.

    The If-Match-Version header carries the version the client read (0 for a
    new collection). Returns 412 if the stored version differs.
    """
    try:
        version = storage.write_collection(owner_id, body.items, if_match_version)
    except PreconditionFailedError as e:
        logger.warning(f"Precondition failed for {owner_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            detail=PreconditionFailedResponse(
                detail=str(e),
                context={
                    "current_version": e.current_version,
                    "provided_version": e.provided_version,
                },
            ).model_dump(),
        )
    except StorageError as e:
        logger.error(f"Storage error writing {owner_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Storage error",
        )
    return WriteResponse(owner_id=owner_id, version=version)


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    # Precondition failures already carry a structured body
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=str(exc.detail)).model_dump(),
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            detail="Internal server error", error_code="INTERNAL_ERROR"
        ).model_dump(),
    )


def create_app(
    settings: Settings | None = None, storage: S3CollectionStorage | None = None
) -> FastAPI:
    """Build the records proxy application.

    Args:
        settings: Proxy settings (read from the environment when omitted)
        storage: Storage to use; built from settings on first request when omitted
    """
    settings = settings or Settings()

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    app = FastAPI(
        title="Records Proxy Service",
        description="Versioned per-owner record collections backed by S3",
        version="0.1.0",
    )
    app.state.settings = settings
    app.state.storage = storage

    app.add_api_route(
        "/health", health_check, methods=["GET"], response_model=HealthResponse, tags=["health"]
    )
    app.add_api_route(
        "/collections/{owner_id}",
        read_collection,
        methods=["GET"],
        response_model=CollectionResponse,
        tags=["collections"],
    )
    app.add_api_route(
        "/collections/{owner_id}",
        write_collection,
        methods=["PUT"],
        response_model=WriteResponse,
        tags=["collections"],
    )
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    return app


app = create_app()
