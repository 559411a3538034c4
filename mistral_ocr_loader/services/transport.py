"""Mistral OCR transport with retry and boundary decoding.

Wraps the ``mistralai`` SDK client so the rest of the package never touches
SDK objects: OCR responses are decoded into `RawOcrResponse`, batch job state
into `BatchJobSnapshot`, and every remote failure becomes a domain exception
carrying the original message verbatim. Transient failures (HTTP 429/5xx,
timeouts, dropped connections) are retried with tenacity before giving up.
"""
from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, TypeVar

import httpx
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from mistral_ocr_loader.config import DEFAULT_MODEL_NAME
from mistral_ocr_loader.errors import MalformedResponseError, OCRTransportError
from mistral_ocr_loader.models.ocr import BatchJobSnapshot, BatchJobStatus, RawOcrResponse

_LOG = logging.getLogger("mistral_ocr.transport")

OCR_BATCH_ENDPOINT = "/v1/ocr"
BATCH_FILE_PURPOSE = "batch"
PDF_MIME_TYPE = "application/pdf"
_RETRYABLE_HTTP_STATUSES = {408, 429, 500, 502, 503, 504}
_RETRYABLE_HTTPX_ERRORS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
)

T = TypeVar("T")


class _MistralClientProtocol(Protocol):  # pragma: no cover - structural typing aid
    ocr: Any
    files: Any
    batch: Any


def default_client(api_key: str) -> _MistralClientProtocol:
    from mistralai import Mistral

    return Mistral(api_key=api_key)


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def build_document_payload(data: bytes, mime_type: str) -> Dict[str, str]:
    """Document chunk accepted by ``ocr.process`` and by batch request bodies."""
    url = to_data_url(data, mime_type)
    if mime_type == PDF_MIME_TYPE:
        return {"type": "document_url", "document_url": url}
    return {"type": "image_url", "image_url": url}


def _as_mapping(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return dict(obj)
    dump = getattr(obj, "model_dump", None)
    if callable(dump):
        return dump()
    return {key: value for key, value in vars(obj).items() if not key.startswith("_")}


def _field(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, Mapping):
            if obj.get(name) is not None:
                return obj[name]
        elif getattr(obj, name, None) is not None:
            return getattr(obj, name)
    return None


def _error_messages(raw_errors: Any) -> List[str]:
    messages: List[str] = []
    for item in raw_errors or []:
        if isinstance(item, str):
            messages.append(item)
            continue
        message = _field(item, "message", "detail")
        messages.append(str(message) if message is not None else str(item))
    return messages


def _is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, _RETRYABLE_HTTPX_ERRORS):
        return True
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    try:
        return int(status) in _RETRYABLE_HTTP_STATUSES
    except (TypeError, ValueError):
        return False


def decode_ocr_response(payload: Any) -> RawOcrResponse:
    """Decode an SDK object or plain dict; raise when ``pages`` is missing."""
    try:
        response = RawOcrResponse.model_validate(_as_mapping(payload))
    except (PydanticValidationError, TypeError) as exc:
        raise MalformedResponseError(f"Malformed response structure: {exc}") from exc
    if not response.has_pages:
        raise MalformedResponseError()
    return response


class MistralTransport:
    """Single OCR calls plus the batch job primitives of the Mistral API."""

    def __init__(
        self,
        client: _MistralClientProtocol,
        *,
        model_name: str = DEFAULT_MODEL_NAME,
        include_image_base64: bool = True,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        self._client = client
        self.model_name = model_name
        self.include_image_base64 = include_image_base64
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds

    def _call(self, operation: str, fn: Callable[[], T], *, idempotent: bool = True) -> T:
        if not idempotent:
            # A retry after a lost response would submit the work twice.
            return fn()

        def _log_retry(retry_state: Any) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            _LOG.warning(
                "mistral_call_retry",
                extra={
                    "operation": operation,
                    "attempt": retry_state.attempt_number,
                    "error": str(exc) if exc else None,
                },
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_random_exponential(multiplier=self.retry_backoff_seconds, max=30),
            retry=retry_if_exception(_is_retryable_error),
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(fn)

    def submit_single(self, data: bytes, mime_type: str) -> RawOcrResponse:
        """OCR one image or one whole PDF in a single synchronous request."""
        document = build_document_payload(data, mime_type)
        try:
            raw = self._call(
                "ocr.process",
                lambda: self._client.ocr.process(
                    model=self.model_name,
                    document=document,
                    include_image_base64=self.include_image_base64,
                ),
            )
        except Exception as exc:
            raise OCRTransportError(str(exc)) from exc
        return decode_ocr_response(raw)

    def batch_request_body(self, data: bytes, mime_type: str) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "document": build_document_payload(data, mime_type),
            "include_image_base64": self.include_image_base64,
        }

    def upload_batch_file(self, path: Path) -> str:
        with path.open("rb") as handle:
            content = handle.read()
        uploaded = self._call(
            "files.upload",
            lambda: self._client.files.upload(
                file={"file_name": path.name, "content": content},
                purpose=BATCH_FILE_PURPOSE,
            ),
        )
        file_id = _field(uploaded, "id")
        if not file_id:
            raise OCRTransportError("File upload returned no file id")
        return str(file_id)

    def create_batch_job(
        self, input_file_id: str, *, metadata: Optional[Dict[str, str]] = None
    ) -> str:
        job = self._call(
            "batch.jobs.create",
            lambda: self._client.batch.jobs.create(
                input_files=[input_file_id],
                model=self.model_name,
                endpoint=OCR_BATCH_ENDPOINT,
                metadata=metadata or {},
            ),
            idempotent=False,
        )
        job_id = _field(job, "id")
        if not job_id:
            raise OCRTransportError("Batch job creation returned no job id")
        return str(job_id)

    def get_batch_job(self, job_id: str) -> BatchJobSnapshot:
        job = self._call(
            "batch.jobs.get", lambda: self._client.batch.jobs.get(job_id=job_id)
        )
        output_file = _field(job, "output_file", "outputFile")
        error_file = _field(job, "error_file", "errorFile")
        return BatchJobSnapshot(
            job_id=str(_field(job, "id") or job_id),
            status=BatchJobStatus.from_service(_field(job, "status")),
            output_file_id=str(output_file) if output_file else None,
            error_file_id=str(error_file) if error_file else None,
            errors=_error_messages(_field(job, "errors")),
        )

    def download_file(self, file_id: str) -> bytes:
        response = self._call(
            "files.download", lambda: self._client.files.download(file_id=file_id)
        )
        if isinstance(response, bytes):
            return response
        if isinstance(response, str):
            return response.encode("utf-8")
        reader = getattr(response, "read", None)
        if callable(reader):
            return reader()
        content = getattr(response, "content", None)
        if isinstance(content, bytes):
            return content
        raise OCRTransportError(f"Unexpected download payload type: {type(response).__name__}")


__all__ = [
    "MistralTransport",
    "OCR_BATCH_ENDPOINT",
    "build_document_payload",
    "decode_ocr_response",
    "default_client",
    "to_data_url",
]
