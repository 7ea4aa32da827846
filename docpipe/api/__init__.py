"""docpipe API layer: routes, schemas, and middleware."""

from docpipe.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from docpipe.api.routes import router
from docpipe.api.schemas import (
    DocumentStatusResponse,
    ErrorResponse,
    HealthResponse,
    ProcessDocumentRequest,
    ProcessDocumentResponse,
    ReconcileResponse,
)

__all__ = [
    "DocumentStatusResponse",
    "ErrorHandlingMiddleware",
    "ErrorResponse",
    "HealthResponse",
    "ProcessDocumentRequest",
    "ProcessDocumentResponse",
    "ReconcileResponse",
    "RequestLoggingMiddleware",
    "configure_cors",
    "router",
]
