"""
Tests for PDF Workbench Backend API endpoints.

Tests cover:
- Health check
- File management (upload, list, view, download, delete)
- Task creation for each transformation kind
- Task polling and result downloads
- Request validation before task creation
"""

import io

import pytest
from pypdf import PdfReader

from pdf_workbench_backend import main


def _upload(client, *files):
    """Upload (name, content) pairs as PDFs and return the saved records."""
    response = client.post(
        "/upload",
        files=[("files", (name, io.BytesIO(content), "application/pdf")) for name, content in files],
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestUpload:
    """Tests for the /upload endpoint."""

    def test_upload_returns_file_records(self, client, two_page_pdf):
        """Uploading a PDF returns its record with the wire field names."""
        (record,) = _upload(client, ("a.pdf", two_page_pdf))

        assert set(record) == {"id", "filename", "originalFilename", "filesize", "mimetype", "uploadedAt", "path"}
        assert record["originalFilename"] == "a.pdf"
        assert record["filesize"] == len(two_page_pdf)
        assert record["mimetype"] == "application/pdf"
        assert record["filename"] != "a.pdf"
        assert record["filename"].endswith(".pdf")

    def test_upload_multiple(self, client, two_page_pdf, three_page_pdf):
        records = _upload(client, ("a.pdf", two_page_pdf), ("b.pdf", three_page_pdf))
        assert [record["originalFilename"] for record in records] == ["a.pdf", "b.pdf"]
        assert records[0]["id"] < records[1]["id"]

    def test_upload_without_files(self, client):
        """Posting no files should fail with 400."""
        response = client.post("/upload")
        assert response.status_code == 400
        assert response.json()["detail"] == "No files uploaded"

    def test_upload_non_pdf(self, client):
        """A part not declared as application/pdf is rejected."""
        before = len(main.file_store.list())
        response = client.post(
            "/upload",
            files={"files": ("test.txt", io.BytesIO(b"not a pdf"), "text/plain")},
        )
        assert response.status_code == 400
        assert "PDF" in response.json()["detail"]
        assert len(main.file_store.list()) == before

    def test_upload_too_many_files(self, client, two_page_pdf):
        """More than five parts are rejected and nothing is saved."""
        before = len(main.file_store.list())
        response = client.post(
            "/upload",
            files=[("files", (f"{i}.pdf", io.BytesIO(two_page_pdf), "application/pdf")) for i in range(6)],
        )
        assert response.status_code == 400
        assert len(main.file_store.list()) == before

    def test_upload_too_large(self, client):
        """A part over 10 MB is rejected."""
        content = b"%PDF-1.4\n" + b"0" * (10 * 1024 * 1024)
        response = client.post(
            "/upload",
            files={"files": ("big.pdf", io.BytesIO(content), "application/pdf")},
        )
        assert response.status_code == 413


class TestFileManagement:
    """Tests for the /files endpoints."""

    def test_list_files_includes_upload(self, client, two_page_pdf):
        (record,) = _upload(client, ("listed.pdf", two_page_pdf))

        response = client.get("/files")
        assert response.status_code == 200
        assert record["id"] in [item["id"] for item in response.json()]

    def test_delete_twice(self, client, two_page_pdf):
        """First delete succeeds, second returns 404."""
        (record,) = _upload(client, ("gone.pdf", two_page_pdf))

        first = client.delete(f"/files/{record['id']}")
        assert first.status_code == 200
        assert first.json() == {"message": "File deleted successfully"}

        second = client.delete(f"/files/{record['id']}")
        assert second.status_code == 404

    def test_delete_leased_file_conflicts(self, client, two_page_pdf):
        """A file held by a running task cannot be deleted."""
        (record,) = _upload(client, ("held.pdf", two_page_pdf))
        main.file_store.acquire([record["id"]])
        try:
            response = client.delete(f"/files/{record['id']}")
            assert response.status_code == 409
        finally:
            main.file_store.release([record["id"]])

    def test_view_inline(self, client, two_page_pdf):
        (record,) = _upload(client, ("view.pdf", two_page_pdf))

        response = client.get(f"/files/{record['id']}/view")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["content-disposition"] == 'inline; filename="view.pdf"'
        assert response.content == two_page_pdf

    def test_download_attachment(self, client, two_page_pdf):
        (record,) = _upload(client, ("down.pdf", two_page_pdf))

        response = client.get(f"/files/{record['id']}/download")
        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="down.pdf"'
        assert response.content == two_page_pdf

    def test_unknown_file(self, client):
        assert client.get("/files/999999/view").status_code == 404
        assert client.get("/files/999999/download").status_code == 404
        assert client.delete("/files/999999").status_code == 404

    def test_non_integer_id(self, client):
        assert client.get("/files/abc/view").status_code == 422


class TestExtractText:
    """Tests for the /extract-text endpoint."""

    def test_extract_text_scenario(self, client, two_page_pdf, poll_task):
        """Upload, extract, poll, then download the text result."""
        (record,) = _upload(client, ("a.pdf", two_page_pdf))

        response = client.post("/extract-text", json={"fileIds": [record["id"]]})
        assert response.status_code == 202
        created = response.json()
        assert created["status"] == "pending"
        assert created["type"] == "extract_text"
        assert created["inputFiles"] == [record["id"]]
        assert created["outputFiles"] == []
        assert created["error"] is None

        task = poll_task(client, created["id"])
        assert task["status"] == "completed"
        (output,) = task["outputFiles"]
        assert output["type"] == "text/plain"
        assert output["filename"].startswith("a-text-")

        result = client.get(f"/results/{output['id']}")
        assert result.status_code == 200
        assert result.headers["content-type"].startswith("text/plain")
        assert result.headers["content-disposition"].startswith("attachment;")
        text = result.text
        assert text.startswith("--- Page 1 ---\n")
        assert text.index("Page one content") < text.index("--- Page 2 ---") < text.index("Page two content")

    def test_extract_text_nonexistent_file(self, client, poll_task):
        """Unknown ids are skipped and the task completes with no outputs."""
        response = client.post("/extract-text", json={"fileIds": [999]})
        assert response.status_code == 202

        task = poll_task(client, response.json()["id"])
        assert task["status"] == "completed"
        assert task["outputFiles"] == []

    def test_extract_text_requires_ids(self, client):
        before = len(main.task_store.list())
        response = client.post("/extract-text", json={"fileIds": []})
        assert response.status_code == 422
        assert len(main.task_store.list()) == before


class TestMerge:
    """Tests for the /merge endpoint."""

    def test_merge_scenario(self, client, two_page_pdf, three_page_pdf, poll_task):
        """Merging a 2-page and a 3-page PDF yields one 5-page combo.pdf."""
        a, b = _upload(client, ("a.pdf", two_page_pdf), ("b.pdf", three_page_pdf))

        response = client.post("/merge", json={"fileIds": [a["id"], b["id"]], "outputFilename": "combo"})
        assert response.status_code == 202
        assert response.json()["type"] == "merge"

        task = poll_task(client, response.json()["id"])
        assert task["status"] == "completed"
        (output,) = task["outputFiles"]
        assert output["filename"] == "combo.pdf"
        assert output["type"] == "application/pdf"

        result = client.get(f"/results/{output['id']}")
        assert result.headers["content-type"] == "application/pdf"
        merged = PdfReader(io.BytesIO(result.content))
        assert len(merged.pages) == 5
        assert "Page one content" in merged.pages[0].extract_text()
        assert "Second doc first" in merged.pages[2].extract_text()

    def test_merge_single_file_rejected(self, client, two_page_pdf):
        """Merge needs at least two ids; no task is created otherwise."""
        (record,) = _upload(client, ("solo.pdf", two_page_pdf))
        before = len(main.task_store.list())

        response = client.post("/merge", json={"fileIds": [record["id"]]})
        assert response.status_code == 422
        assert len(main.task_store.list()) == before


class TestConvertToImages:
    """Tests for the /convert-to-images endpoint."""

    @pytest.mark.parametrize("image_format,mimetype", [("png", "image/png"), ("jpg", "image/jpeg")])
    def test_convert_each_page(self, client, two_page_pdf, poll_task, image_format, mimetype):
        (record,) = _upload(client, ("pages.pdf", two_page_pdf))

        response = client.post("/convert-to-images", json={"fileId": record["id"], "format": image_format})
        assert response.status_code == 202
        created = response.json()
        assert created["type"] == "convert_to_image"
        assert created["inputFiles"] == [record["id"]]

        task = poll_task(client, created["id"])
        assert task["status"] == "completed"
        assert [output["type"] for output in task["outputFiles"]] == [mimetype, mimetype]

        result = client.get(f"/results/{task['outputFiles'][0]['id']}")
        assert result.headers["content-type"] == mimetype

    def test_convert_missing_file_fails(self, client, poll_task):
        response = client.post("/convert-to-images", json={"fileId": 999})
        task = poll_task(client, response.json()["id"])

        assert task["status"] == "failed"
        assert task["error"] == "File not found"
        assert task["outputFiles"] == []

    def test_convert_rejects_unknown_format(self, client):
        response = client.post("/convert-to-images", json={"fileId": 1, "format": "gif"})
        assert response.status_code == 422


class TestTaskPolling:
    """Tests for the /tasks and /results endpoints."""

    def test_get_nonexistent_task(self, client):
        response = client.get("/tasks/999999")
        assert response.status_code == 404

    def test_terminal_task_reads_are_identical(self, client, poll_task):
        """Polling a finished task repeatedly returns the same snapshot."""
        response = client.post("/extract-text", json={"fileIds": [999]})
        task = poll_task(client, response.json()["id"])

        again = client.get(f"/tasks/{task['id']}").json()
        assert again == task
        assert set(again) == {"id", "type", "status", "createdAt", "updatedAt", "inputFiles", "outputFiles", "error"}

    def test_result_not_found(self, client):
        response = client.get("/results/999999")
        assert response.status_code == 404
        assert response.json()["detail"] == "Result file not found"
