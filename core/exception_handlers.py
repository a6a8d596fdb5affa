from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
import logging
from core.exceptions import StoreUnavailableError
from .response import error as resp_error

logger = logging.getLogger(__name__)

def register_exception_handlers(app: FastAPI):
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content=resp_error(code=str(exc.status_code), message=str(exc.detail)))

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.error("Store unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content=resp_error(code="store_unavailable", message=str(exc)))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content=resp_error(code="internal_error", message="Internal server error"))
