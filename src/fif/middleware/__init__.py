"""Middleware registration."""

from fastapi import FastAPI

from fif.config import Settings
from fif.middleware.cors import setup_cors
from fif.middleware.error_handler import setup_error_handlers
from fif.middleware.logging import setup_logging
from fif.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    Starlette runs middleware in reverse-add order (last added = outermost),
    so CORS goes last to wrap every response, errors included.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
