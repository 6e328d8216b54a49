import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from expense_ingest.api.v1.imports import router as imports_router
from expense_ingest.core.config import get_settings
from expense_ingest.core.dependencies import init_db
from expense_ingest.core.errors import HTTP_STATUS_BY_KIND, IngestError

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

INTERNAL_ERROR_DETAIL = "Internal error"

app = FastAPI(
    title="Expense Ingest API",
    version="0.1.0",
    docs_url="/docs" if settings.docs_enabled else None,
)


@app.on_event("startup")
async def _startup():
    init_db()


app.include_router(imports_router, prefix="/api/v1", tags=["imports"])


@app.exception_handler(IngestError)
async def _ingest_error_handler(request: Request, exc: IngestError):
    status_code = HTTP_STATUS_BY_KIND.get(exc.kind, 500)
    # Storage faults may carry paths or driver messages.
    if status_code == 500 and not settings.expose_error_details:
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.kind.value, "detail": INTERNAL_ERROR_DETAIL},
        )
    content = {"error": exc.kind.value, "detail": exc.message, **exc.details}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": INTERNAL_ERROR_DETAIL})


@app.get("/health")
async def health():
    return {"status": "ok"}
