"""FastAPI application for txbot."""

import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from txbot.config import configure_logging, settings
from txbot.db.sqlite import TransactionStore
from txbot.errors import InvalidField, TransactionError
from txbot.models import ChatRequest, PipelineResult, Transaction, TransactionListResponse, TransactionUpdate
from txbot.parsers.llm_client import StructuredExtractor
from txbot.parsers.ocr import TesseractRecognizer, TextExtractor, is_valid_image_format
from txbot.services.dedup import DuplicateResolver
from txbot.services.pipeline import TransactionPipeline

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "application/pdf"}

app = FastAPI(
    title="txbot",
    description="Chat and receipt transaction capture with LLM-powered extraction",
    version="0.1.0",
)

# CORS for the dashboard frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_pipeline() -> TransactionPipeline:
    """Build the pipeline and its collaborators once per process."""
    store = TransactionStore()
    recognizer = TesseractRecognizer(
        tesseract_cmd=settings.tesseract_cmd,
        lang=settings.ocr_language,
        timeout=settings.ocr_timeout_seconds,
    )
    return TransactionPipeline(
        store=store,
        structured_extractor=StructuredExtractor(settings),
        text_extractor=TextExtractor(recognizer, max_bytes=settings.max_image_bytes),
        duplicate_resolver=DuplicateResolver(
            store,
            tolerance=settings.duplicate_tolerance,
            use_index=settings.use_merchant_date_index,
        ),
    )


@app.on_event("startup")
async def startup():
    """Initialize on startup."""
    configure_logging()
    settings.ensure_directories()
    if settings.dev_mode:
        settings.log_config()


@app.exception_handler(TransactionError)
async def transaction_error_handler(request: Request, exc: TransactionError):
    """Map pipeline failure kinds to status codes and a consistent body."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}", exc_info=exc.cause)
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict(include_cause=settings.dev_mode)},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report malformed requests as InvalidField for the first offending field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [part for part in first.get("loc", ()) if part not in ("body", "query", "path", "form")]
    field = str(loc[-1]) if loc else "request"
    return await transaction_error_handler(request, InvalidField(field, first.get("msg", "Invalid request")))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Give non-pipeline errors such as 404 the same body shape."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": {"message": exc.detail, "type": "HTTPException"}},
        headers=getattr(exc, "headers", None),
    )


@app.get("/health")
async def health_check(pipeline: TransactionPipeline = Depends(get_pipeline)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "message": "Transaction bot API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "transaction_count": pipeline.store.count_transactions(),
    }


@app.post("/chat", response_model=PipelineResult)
async def chat(request: ChatRequest, pipeline: TransactionPipeline = Depends(get_pipeline)):
    """Record a transaction described in a text message."""
    if not request.message or not request.message.strip():
        raise InvalidField("message", "Message is required and cannot be empty")
    return await pipeline.process_text(request.user_id, request.message)


@app.post("/chat/upload", response_model=PipelineResult)
async def upload_receipt(
    user_id: str = Form(..., alias="userId"),
    file: UploadFile = File(...),
    pipeline: TransactionPipeline = Depends(get_pipeline),
):
    """Record a transaction from an uploaded receipt (JPEG, PNG or PDF)."""
    if not file.filename:
        raise InvalidField("file", "No filename provided")
    if not is_valid_image_format(file.filename):
        raise InvalidField("file", "Invalid file type. Only JPEG, PNG, and PDF files are allowed.")
    if file.content_type and file.content_type not in ALLOWED_CONTENT_TYPES:
        raise InvalidField("file", "Invalid file type. Only JPEG, PNG, and PDF files are allowed.")

    contents = await file.read()
    if not contents:
        raise InvalidField("file", "Empty file")

    settings.uploads_path.mkdir(parents=True, exist_ok=True)
    upload_path = settings.uploads_path / f"receipt-{uuid.uuid4().hex}{Path(file.filename).suffix.lower()}"
    upload_path.write_bytes(contents)

    # The pipeline owns the file from here and removes it
    return await pipeline.process_image_file(user_id, upload_path)


@app.get("/transactions/{user_id}", response_model=TransactionListResponse)
async def get_transactions(
    user_id: str,
    limit: int = settings.default_history_limit,
    pipeline: TransactionPipeline = Depends(get_pipeline),
):
    """Get a user's transaction history, newest first."""
    if limit < 1:
        raise InvalidField("limit", "Limit must be a positive integer")
    transactions = pipeline.get_history(user_id, limit)
    return TransactionListResponse(transactions=transactions, count=len(transactions))


@app.get("/transactions/{user_id}/{transaction_id}", response_model=Transaction)
async def get_transaction(user_id: str, transaction_id: str, pipeline: TransactionPipeline = Depends(get_pipeline)):
    """Get a single transaction."""
    transaction = pipeline.get_transaction(user_id, transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


@app.patch("/transactions/{user_id}/{transaction_id}", response_model=Transaction)
async def update_transaction(
    user_id: str,
    transaction_id: str,
    update: TransactionUpdate,
    pipeline: TransactionPipeline = Depends(get_pipeline),
):
    """Update mutable fields of a transaction."""
    transaction = pipeline.update_transaction(user_id, transaction_id, update.model_dump(exclude_unset=True))
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


@app.delete("/transactions/{user_id}/{transaction_id}")
async def delete_transaction(user_id: str, transaction_id: str, pipeline: TransactionPipeline = Depends(get_pipeline)):
    """Delete a transaction."""
    if not pipeline.delete_transaction(user_id, transaction_id):
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"status": "deleted", "transaction_id": transaction_id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "txbot.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.dev_mode,
    )
