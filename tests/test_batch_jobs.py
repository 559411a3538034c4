import json
import logging

import pytest

from mistral_ocr_loader.errors import (
    BatchJobFailed,
    BatchJobTimeout,
    BatchProcessingError,
    CleanupError,
)
from mistral_ocr_loader.models.ocr import PageImage
from mistral_ocr_loader.services import batch_jobs
from mistral_ocr_loader.services.batch_jobs import BatchJobManager, PollPolicy
from mistral_ocr_loader.services.ocr_service import MistralOCRService
from mistral_ocr_loader.services.transport import MistralTransport
from tests.stubs.mistral_stub import (
    StubMistralClient,
    echo_output,
    jsonl,
    ocr_payload,
    success_line,
)

BASE_METADATA = {"source": "scan.pdf", "pdf": {"version": "1.7", "totalPages": 3}}


def _pages(count: int):
    return [PageImage(page_number=n, data=f"png-{n}".encode()) for n in range(1, count + 1)]


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


def _manager(client, workspace, sleeps=None, **kwargs):
    transport = MistralTransport(client, retry_backoff_seconds=0.0)
    kwargs.setdefault("poll_policy", PollPolicy(interval_seconds=5.0, max_attempts=5))
    return BatchJobManager(
        transport,
        MistralOCRService(transport),
        sleep_fn=(sleeps.append if sleeps is not None else (lambda _s: None)),
        workspace_dir=workspace,
        **kwargs,
    )


def test_batch_success_maps_pages_in_order(workspace):
    client = StubMistralClient(job_statuses=["QUEUED", "RUNNING", "SUCCESS"])
    sleeps = []
    docs = _manager(client, workspace, sleeps).process_pages(_pages(3), BASE_METADATA)

    assert [d.page_content for d in docs] == ["OCR page_1", "OCR page_2", "OCR page_3"]
    assert [d.metadata["pdf"]["loc"]["pageNumber"] for d in docs] == [1, 2, 3]
    assert all(d.metadata["pdf"]["totalPages"] == 3 for d in docs)
    assert docs[0].metadata["dimensions"] == {"width": 1700, "height": 2200, "dpi": 200}
    assert "loc" not in BASE_METADATA["pdf"]
    assert sleeps == [5.0, 5.0]
    assert client.batch.jobs.polls == 3
    assert list(workspace.iterdir()) == []


def test_interchange_file_has_one_request_per_page(workspace):
    client = StubMistralClient(job_statuses=["SUCCESS"])
    _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)

    (upload,) = client.files.uploads
    assert upload["file_name"].endswith(".jsonl")
    lines = [json.loads(line) for line in upload["content"].decode().splitlines()]
    assert [line["custom_id"] for line in lines] == ["page_1", "page_2"]
    body = lines[0]["body"]
    assert body["model"] == "mistral-ocr-latest"
    assert body["include_image_base64"] is True
    assert body["document"]["type"] == "image_url"
    assert body["document"]["image_url"].startswith("data:image/png;base64,")
    assert client.batch.jobs.created[0]["endpoint"] == "/v1/ocr"


def test_results_are_correlated_by_custom_id(workspace):
    def reversed_output(requests):
        return jsonl(
            success_line(req["custom_id"], f"text for {req['custom_id']}")
            for req in reversed(requests)
        )

    client = StubMistralClient(job_statuses=["SUCCESS"], output_factory=reversed_output)
    docs = _manager(client, workspace).process_pages(_pages(3), BASE_METADATA)
    assert [d.page_content for d in docs] == [
        "text for page_1",
        "text for page_2",
        "text for page_3",
    ]


def test_lines_without_custom_id_fall_back_to_position(workspace):
    def bare_output(requests):
        return jsonl({"response": ocr_payload(f"bare {req['custom_id']}")} for req in requests)

    client = StubMistralClient(job_statuses=["SUCCESS"], output_factory=bare_output)
    docs = _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert [d.page_content for d in docs] == ["bare page_1", "bare page_2"]


def test_failed_line_only_affects_its_page(workspace):
    def mixed_output(requests):
        return jsonl(
            [
                success_line("page_1", "fine"),
                {"custom_id": "page_2", "response": None, "error": {"message": "Invalid image"}},
                {
                    "custom_id": "page_3",
                    "response": {"status_code": 500, "body": {"message": "internal"}},
                },
            ]
        )

    client = StubMistralClient(job_statuses=["SUCCESS"], output_factory=mixed_output)
    docs = _manager(client, workspace).process_pages(_pages(3), BASE_METADATA)

    assert docs[0].page_content == "fine"
    assert "error" not in docs[0].metadata["pdf"]
    assert docs[1].page_content == ""
    assert docs[1].metadata["pdf"]["error"] == "Invalid image"
    assert docs[1].metadata["pdf"]["loc"] == {"pageNumber": 2}
    assert docs[2].page_content == ""
    assert docs[2].metadata["pdf"]["error"] == "OCR request failed with status 500: internal"


def test_malformed_body_and_missing_line_become_page_errors(workspace):
    def partial_output(requests):
        return jsonl(
            [{"custom_id": "page_1", "response": {"status_code": 200, "body": {"pages": []}}}]
        )

    client = StubMistralClient(job_statuses=["SUCCESS"], output_factory=partial_output)
    docs = _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert docs[0].metadata["pdf"]["error"] == "OCR processing failed: Malformed response structure"
    assert docs[1].metadata["pdf"]["error"] == "No batch result returned for page 2"


def test_failed_job_raises_with_service_errors(workspace):
    client = StubMistralClient(job_statuses=["RUNNING", "FAILED"], job_errors=["quota exceeded"])
    with pytest.raises(BatchJobFailed) as exc:
        _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert str(exc.value) == (
        "Batch processing failed: Batch job job-1 ended with status failed: quota exceeded"
    )
    assert client.files.downloads == []
    assert list(workspace.iterdir()) == []


@pytest.mark.parametrize("status", ["CANCELLED", "TIMEOUT_EXCEEDED"])
def test_cancelled_or_expired_job_is_a_failure(workspace, status):
    client = StubMistralClient(job_statuses=[status])
    with pytest.raises(BatchJobFailed) as exc:
        _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert "no error details reported" in str(exc.value)


def test_timeout_after_max_attempts_cleans_up(workspace):
    client = StubMistralClient(job_statuses=["RUNNING"])
    sleeps = []
    manager = _manager(
        client, workspace, sleeps, poll_policy=PollPolicy(interval_seconds=1.5, max_attempts=3)
    )
    with pytest.raises(BatchJobTimeout) as exc:
        manager.process_pages(_pages(2), BASE_METADATA)
    assert isinstance(exc.value, BatchProcessingError)
    assert str(exc.value).startswith("Batch processing failed: Batch job job-1 did not complete")
    assert client.batch.jobs.polls == 3
    assert sleeps == [1.5, 1.5]
    assert list(workspace.iterdir()) == []


def test_status_regression_is_ignored(workspace):
    client = StubMistralClient(job_statuses=["RUNNING", "QUEUED", "SUCCESS"])
    docs = _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert len(docs) == 2


def test_upload_failure_is_wrapped_with_cause(workspace):
    client = StubMistralClient(upload_error=RuntimeError("disk quota"))
    with pytest.raises(BatchProcessingError) as exc:
        _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert str(exc.value) == "Batch processing failed: disk quota"
    assert client.batch.jobs.created == []
    assert list(workspace.iterdir()) == []


def test_unparseable_output_is_fatal(workspace):
    client = StubMistralClient(job_statuses=["SUCCESS"], output_factory=lambda _r: b"{not json\n")
    with pytest.raises(BatchProcessingError) as exc:
        _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert str(exc.value).startswith("Batch processing failed: Invalid JSON on output line 1")


def test_cleanup_failure_is_logged_not_raised(workspace, monkeypatch, caplog):
    def _fail(path, directory):
        raise CleanupError(f"Failed to remove batch interchange file {path}: busy")

    monkeypatch.setattr(batch_jobs, "_remove_interchange", _fail)
    client = StubMistralClient(job_statuses=["SUCCESS"])
    with caplog.at_level(logging.WARNING, logger="mistral_ocr.batch"):
        docs = _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert [d.page_content for d in docs] == ["OCR page_1", "OCR page_2"]
    assert [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING] == [
        "batch_cleanup_failed"
    ]


def test_empty_input_makes_no_calls(workspace):
    client = StubMistralClient()
    assert _manager(client, workspace).process_pages([], BASE_METADATA) == []
    assert client.total_calls == 0


def test_single_page_uses_direct_call(workspace):
    client = StubMistralClient(ocr_responses=[ocr_payload("only page")])
    (doc,) = _manager(client, workspace).process_pages(_pages(1), BASE_METADATA)
    assert doc.page_content == "only page"
    assert doc.metadata["pdf"]["loc"] == {"pageNumber": 1}
    assert client.files.uploads == []


def test_single_page_failure_uses_batch_prefix(workspace):
    client = StubMistralClient(ocr_responses=[RuntimeError("boom")])
    with pytest.raises(BatchProcessingError) as exc:
        _manager(client, workspace).process_pages(_pages(1), BASE_METADATA)
    assert str(exc.value) == "Batch processing failed: boom"


def test_batch_size_splits_pages_into_jobs(workspace):
    client = StubMistralClient(job_statuses=["SUCCESS"], ocr_responses=[ocr_payload("tail")])
    docs = _manager(client, workspace, batch_size=2).process_pages(_pages(5), BASE_METADATA)
    assert [d.page_content for d in docs] == [
        "OCR page_1",
        "OCR page_2",
        "OCR page_3",
        "OCR page_4",
        "tail",
    ]
    assert len(client.batch.jobs.created) == 2
    assert len(client.ocr.calls) == 1
    assert [d.metadata["pdf"]["loc"]["pageNumber"] for d in docs] == [1, 2, 3, 4, 5]


def test_echo_output_helper_matches_requests():
    # Sanity check for the stub used above.
    out = echo_output([{"custom_id": "page_7"}])
    assert json.loads(out.decode().splitlines()[0])["custom_id"] == "page_7"


def _service_error_line(custom_id, message):
    return {
        "custom_id": custom_id,
        "response": {"status_code": 400, "body": {"message": message}},
        "error": None,
    }


def test_job_with_only_an_error_file_returns_page_errors(workspace):
    def all_failed(requests):
        return jsonl(_service_error_line(req["custom_id"], "Image too small") for req in requests)

    client = StubMistralClient(
        job_statuses=["SUCCESS"], output_factory=None, error_factory=all_failed
    )
    docs = _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)

    assert client.files.downloads == ["err-job-1"]
    assert [d.page_content for d in docs] == ["", ""]
    assert [d.metadata["pdf"]["error"] for d in docs] == [
        "OCR request failed with status 400: Image too small",
        "OCR request failed with status 400: Image too small",
    ]
    assert list(workspace.iterdir()) == []


def test_error_file_answers_pages_missing_from_output(workspace):
    client = StubMistralClient(
        job_statuses=["SUCCESS"],
        output_factory=lambda _r: jsonl([success_line("page_1", "fine")]),
        error_factory=lambda _r: jsonl([_service_error_line("page_2", "Unsupported image")]),
    )
    docs = _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)

    assert client.files.downloads == ["out-job-1", "err-job-1"]
    assert docs[0].page_content == "fine"
    assert docs[1].metadata["pdf"]["error"] == (
        "OCR request failed with status 400: Unsupported image"
    )


def test_job_without_any_result_file_is_fatal(workspace):
    client = StubMistralClient(job_statuses=["SUCCESS"], output_factory=None)
    with pytest.raises(BatchProcessingError) as exc:
        _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert str(exc.value) == (
        "Batch processing failed: Batch job job-1 succeeded without an output or error file"
    )
    assert list(workspace.iterdir()) == []


class _ServiceUnavailable(Exception):
    status_code = 503


def test_job_creation_is_submitted_once(workspace):
    client = StubMistralClient(create_error=_ServiceUnavailable("upstream connect error"))
    with pytest.raises(BatchProcessingError) as exc:
        _manager(client, workspace).process_pages(_pages(2), BASE_METADATA)
    assert str(exc.value) == "Batch processing failed: upstream connect error"
    assert len(client.batch.jobs.created) == 1
    assert client.batch.jobs.polls == 0


def test_non_numeric_status_code_only_affects_its_page(workspace):
    def odd_status(requests):
        return jsonl(
            [
                success_line("page_1", "one"),
                {"custom_id": "page_2", "response": {"status_code": "abc", "body": ocr_payload("x")}},
                success_line("page_3", "three"),
            ]
        )

    client = StubMistralClient(job_statuses=["SUCCESS"], output_factory=odd_status)
    docs = _manager(client, workspace).process_pages(_pages(3), BASE_METADATA)

    assert [d.page_content for d in docs] == ["one", "", "three"]
    assert docs[1].metadata["pdf"]["error"] == (
        "OCR processing failed: Invalid status code 'abc'"
    )
