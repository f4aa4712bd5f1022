"""
Correlation ids for charge requests and settlement attempts

A trace id enters on the X-Trace-ID header (or is minted here), follows the
request into the TapPay call and is echoed back on the response. Settlement
attempts open their own trace tagged with the job id, so a donation can be
followed from the charge log line to the worker that stored it.
"""
import uuid
import time
import json
from typing import Dict, Optional
from contextvars import ContextVar
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
SPAN_HEADER = "X-Span-ID"

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

def _new_id(length: int) -> str:
    return uuid.uuid4().hex[:length]

class TraceSpan:
    """One timed operation; current for the context until finished"""

    def __init__(self, service: str, operation: str, trace_id: str = None, parent_span_id: str = None):
        self.service = service
        self.operation = operation
        self.trace_id = trace_id or _new_id(16)
        self.span_id = _new_id(8)
        self.parent_span_id = parent_span_id
        self.tags: Dict[str, object] = {}
        self.error: Optional[str] = None
        self._started = time.monotonic()
        self._tokens = (trace_id_var.set(self.trace_id), span_id_var.set(self.span_id))

    def tag(self, **tags):
        self.tags.update(tags)
        return self

    def set_error(self, error: BaseException):
        self.error = f"{type(error).__name__}: {error}"
        return self

    def finish(self):
        record = {
            "service": self.service,
            "operation": self.operation,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "duration_ms": round((time.monotonic() - self._started) * 1000, 2),
            "status": "error" if self.error else "ok",
            "tags": self.tags,
        }
        if self.error:
            record["error"] = self.error
        logger.info(f"TRACE: {json.dumps(record, ensure_ascii=False, default=str)}")
        trace_id_var.reset(self._tokens[0])
        span_id_var.reset(self._tokens[1])

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None:
            self.set_error(exc_val)
        self.finish()

class Tracer:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, operation: str, trace_id: str = None, parent_span_id: str = None) -> TraceSpan:
        return TraceSpan(self.service_name, operation, trace_id, parent_span_id)

    def start_request_span(self, request: Request) -> TraceSpan:
        """Continue the caller's trace when it sent one"""
        span = self.start_span(
            f"{request.method} {request.url.path}",
            trace_id=request.headers.get(TRACE_HEADER),
            parent_span_id=request.headers.get(SPAN_HEADER),
        )
        return span.tag(method=request.method, path=request.url.path)

    def start_job_span(self, job_id: str, attempt: int, worker: str) -> TraceSpan:
        return self.start_span("settle_donation").tag(job_id=job_id, attempt=attempt, worker=worker)

giving_tracer = Tracer("giving-api")
settlement_tracer = Tracer("settlement-worker")

def get_trace_headers() -> Dict[str, str]:
    """Headers that carry the current trace to an outbound call"""
    headers = {}
    if trace_id_var.get():
        headers[TRACE_HEADER] = trace_id_var.get()
    if span_id_var.get():
        headers[SPAN_HEADER] = span_id_var.get()
    return headers

async def tracing_middleware(request: Request, call_next, tracer: Tracer = giving_tracer):
    with tracer.start_request_span(request) as span:
        request.state.trace_id = span.trace_id
        response = await call_next(request)
        span.tag(status_code=response.status_code)
        response.headers[TRACE_HEADER] = span.trace_id
        response.headers[SPAN_HEADER] = span.span_id
        return response
