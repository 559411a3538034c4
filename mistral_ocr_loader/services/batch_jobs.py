"""Batch (asynchronous) Mistral OCR processing.

Packages page images into one JSONL interchange file, uploads it, creates a
batch job against the OCR endpoint, polls until the job reaches a terminal
status (or the attempt budget runs out), then downloads the JSONL results and
maps each line back to its page by ``custom_id``. Lines of the job's error file
fill in the pages the output file does not answer.

Failure model:
 - anything that stops the job from producing results (upload, job creation,
   polling, FAILED/CANCELED/EXPIRED, timeout, unreadable output) raises a
   `BatchProcessingError` whose message starts with "Batch processing failed:";
   no partial results are returned;
 - a single failed line inside a successful job only affects its own page,
   which comes back with empty content and ``pdf.error`` set.

The interchange file and its private temp directory are removed on every exit
path. Removal problems are logged as warnings and never reach the caller.
"""
from __future__ import annotations

import json
import logging
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from langchain_core.documents import Document

from mistral_ocr_loader.errors import (
    BatchJobFailed,
    BatchJobTimeout,
    BatchProcessingError,
    CleanupError,
    MalformedResponseError,
    OCRServiceError,
)
from mistral_ocr_loader.models.ocr import (
    BatchJob,
    BatchJobStatus,
    OcrResult,
    PageImage,
)
from mistral_ocr_loader.services.normaliser import normalise_response
from mistral_ocr_loader.services.ocr_service import MistralOCRService, build_page_document
from mistral_ocr_loader.services.transport import MistralTransport, decode_ocr_response

_LOG = logging.getLogger("mistral_ocr.batch")

POLL_INTERVAL_SECONDS = 5.0
MAX_POLL_ATTEMPTS = 30
INTERCHANGE_FILE_NAME = "batch_requests.jsonl"


@dataclass(frozen=True)
class PollPolicy:
    """Delay schedule between job status polls.

    Fixed interval by default; subclasses may override `delay_for` to add
    backoff without touching the manager.
    """

    interval_seconds: float = POLL_INTERVAL_SECONDS
    max_attempts: int = MAX_POLL_ATTEMPTS

    def delay_for(self, attempt: int) -> float:
        return self.interval_seconds


def custom_id_for(page_number: int) -> str:
    return f"page_{page_number}"


def _remove_interchange(path: Path, directory: Path) -> None:
    try:
        path.unlink(missing_ok=True)
        directory.rmdir()
    except OSError as exc:
        raise CleanupError(f"Failed to remove batch interchange file {path}: {exc}") from exc


@contextmanager
def interchange_file(workspace_dir: Optional[Path] = None) -> Iterator[Path]:
    """Yield a JSONL path inside a private temp directory, removed on exit."""
    directory = Path(tempfile.mkdtemp(prefix="mistral-ocr-batch-", dir=workspace_dir))
    path = directory / INTERCHANGE_FILE_NAME
    try:
        yield path
    finally:
        try:
            _remove_interchange(path, directory)
        except CleanupError as exc:
            _LOG.warning(
                "batch_cleanup_failed",
                extra={"error": str(exc), "directory": str(directory)},
            )


def _error_text(error: Any) -> str:
    if isinstance(error, Mapping):
        for key in ("message", "detail", "error"):
            if error.get(key):
                return _error_text(error[key])
        return json.dumps(dict(error), sort_keys=True)
    return str(error)


def result_from_record(record: Mapping[str, Any]) -> OcrResult:
    """Map one output JSONL line onto an `OcrResult` (errors become data)."""
    error = record.get("error")
    if error:
        return OcrResult(error=_error_text(error))
    response = record.get("response")
    if not isinstance(response, Mapping):
        return OcrResult(error=str(MalformedResponseError()))
    body = response.get("body", response)
    status_code = response.get("status_code")
    if status_code is not None:
        try:
            code = int(status_code)
        except (TypeError, ValueError):
            return OcrResult(
                error=str(MalformedResponseError(f"Invalid status code {status_code!r}"))
            )
        if code >= 400:
            return OcrResult(
                error=f"OCR request failed with status {status_code}: {_error_text(body)}"
            )
    try:
        results = normalise_response(decode_ocr_response(body))
    except MalformedResponseError as exc:
        return OcrResult(error=str(exc))
    return results[0]


def parse_output_lines(payload: bytes) -> List[Dict[str, Any]]:
    records: List[Dict[str, Any]] = []
    for number, line in enumerate(payload.decode("utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            raise BatchProcessingError(f"Invalid JSON on output line {number}: {exc}") from exc
        if not isinstance(record, dict):
            raise BatchProcessingError(f"Output line {number} is not a JSON object")
        records.append(record)
    return records


def correlate_results(
    pages: Sequence[PageImage],
    records: Sequence[Mapping[str, Any]],
    error_records: Sequence[Mapping[str, Any]] = (),
) -> List[OcrResult]:
    """Match output records to pages by ``custom_id``.

    Output records without a ``custom_id`` fall back to their line position.
    Lines from the job's error file only ever match by ``custom_id`` and are
    used for pages the output file does not answer.
    """
    failed_by_id: Dict[str, Mapping[str, Any]] = {
        str(record["custom_id"]): record
        for record in error_records
        if record.get("custom_id")
    }
    by_id: Dict[str, Mapping[str, Any]] = {}
    by_position: Dict[int, Mapping[str, Any]] = {}
    for position, record in enumerate(records):
        custom_id = record.get("custom_id")
        if custom_id:
            by_id[str(custom_id)] = record
        else:
            by_position[position] = record
    results: List[OcrResult] = []
    for index, page in enumerate(pages):
        custom_id = custom_id_for(page.page_number)
        record = (
            by_id.get(custom_id) or by_position.get(index) or failed_by_id.get(custom_id)
        )
        if record is None:
            results.append(
                OcrResult(error=f"No batch result returned for page {page.page_number}")
            )
            continue
        results.append(result_from_record(record))
    return results


class BatchJobManager:
    """Owns the lifecycle of Mistral OCR batch jobs for one loader."""

    def __init__(
        self,
        transport: MistralTransport,
        ocr_service: MistralOCRService,
        *,
        poll_policy: Optional[PollPolicy] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        batch_size: Optional[int] = None,
        workspace_dir: Optional[Path] = None,
    ) -> None:
        self.transport = transport
        self.ocr_service = ocr_service
        self.poll_policy = poll_policy or PollPolicy()
        self.sleep_fn = sleep_fn
        self.batch_size = batch_size
        self.workspace_dir = workspace_dir

    def process_pages(
        self, pages: Sequence[PageImage], metadata: Mapping[str, Any]
    ) -> List[Document]:
        if not pages:
            return []
        size = self.batch_size or len(pages)
        documents: List[Document] = []
        for start in range(0, len(pages), size):
            documents.extend(self._process_chunk(pages[start : start + size], metadata))
        return documents

    def _process_chunk(
        self, pages: Sequence[PageImage], metadata: Mapping[str, Any]
    ) -> List[Document]:
        if len(pages) == 1:
            return [self._process_one(pages[0], metadata)]
        try:
            results = self._run_batch(pages, metadata)
        except BatchProcessingError:
            raise
        except Exception as exc:
            raise BatchProcessingError(getattr(exc, "cause", None) or str(exc)) from exc
        return [
            build_page_document(result, metadata, page.page_number)
            for page, result in zip(pages, results)
        ]

    def _process_one(self, page: PageImage, metadata: Mapping[str, Any]) -> Document:
        try:
            result = self.ocr_service.ocr_page(page.data, page.mime_type)
        except OCRServiceError as exc:
            raise BatchProcessingError(getattr(exc, "cause", None) or str(exc)) from exc
        return build_page_document(result, metadata, page.page_number)

    def _run_batch(
        self, pages: Sequence[PageImage], metadata: Mapping[str, Any]
    ) -> List[OcrResult]:
        source = metadata.get("source")
        with interchange_file(self.workspace_dir) as path:
            self._write_requests(path, pages)
            _LOG.info(
                "batch_upload_start",
                extra={"source": source, "pages": len(pages), "bytes": path.stat().st_size},
            )
            file_id = self.transport.upload_batch_file(path)
            job_id = self.transport.create_batch_job(
                file_id, metadata={"source": str(source or "")}
            )
            _LOG.info(
                "batch_submitted",
                extra={"job_id": job_id, "input_file_id": file_id, "pages": len(pages)},
            )
            job = self._wait_for_job(BatchJob(job_id=job_id, input_file_id=file_id))
            if not job.output_file_id and not job.error_file_id:
                raise BatchProcessingError(
                    f"Batch job {job.job_id} succeeded without an output or error file"
                )
            records = self._download_lines(job.output_file_id)
            error_records = self._download_lines(job.error_file_id)
        results = correlate_results(pages, records, error_records)
        failed = sum(1 for result in results if result.failed)
        _LOG.info(
            "batch_complete",
            extra={"job_id": job.job_id, "pages": len(results), "failed_pages": failed},
        )
        return results

    def _download_lines(self, file_id: Optional[str]) -> List[Dict[str, Any]]:
        if not file_id:
            return []
        return parse_output_lines(self.transport.download_file(file_id))

    def _write_requests(self, path: Path, pages: Sequence[PageImage]) -> None:
        with path.open("w", encoding="utf-8") as handle:
            for page in pages:
                request = {
                    "custom_id": custom_id_for(page.page_number),
                    "body": self.transport.batch_request_body(page.data, page.mime_type),
                }
                handle.write(json.dumps(request, separators=(",", ":")))
                handle.write("\n")

    def _wait_for_job(self, job: BatchJob) -> BatchJob:
        policy = self.poll_policy
        for attempt in range(1, policy.max_attempts + 1):
            status = job.advance(self.transport.get_batch_job(job.job_id))
            _LOG.info(
                "batch_poll",
                extra={"job_id": job.job_id, "attempt": attempt, "status": status.value},
            )
            if status is BatchJobStatus.SUCCESS:
                return job
            if status.is_terminal:
                raise BatchJobFailed(job.job_id, status.value, job.errors)
            if attempt < policy.max_attempts:
                self.sleep_fn(policy.delay_for(attempt))
        raise BatchJobTimeout(job.job_id, policy.max_attempts, job.status.value)


__all__ = [
    "BatchJobManager",
    "PollPolicy",
    "correlate_results",
    "custom_id_for",
    "interchange_file",
    "parse_output_lines",
    "result_from_record",
]
