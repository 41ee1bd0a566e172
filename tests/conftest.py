"""
Pytest configuration and fixtures for PDF Workbench Backend tests.
"""

import io
import os
import shutil
import tempfile
import time

import pytest
from fastapi.testclient import TestClient
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

# Set test environment variables before importing the app
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="pdf_workbench_test_uploads_")
os.environ["STORAGE_BACKEND"] = "local"
os.environ["DATABASE_BACKEND"] = "memory"
os.environ["MAX_WORKERS"] = "2"
os.environ["RENDER_DPI"] = "36"

from pdf_workbench_backend.blob_storage import LocalBlobStorage  # noqa: E402
from pdf_workbench_backend.file_store import FileStore, InMemoryFileRecords  # noqa: E402
from pdf_workbench_backend.main import app  # noqa: E402
from pdf_workbench_backend.task_engine import TaskEngine  # noqa: E402
from pdf_workbench_backend.task_store import InMemoryTaskStore  # noqa: E402

TERMINAL = {"completed", "failed"}


def make_pdf(*pages: str) -> bytes:
    """Generate a PDF with one page per argument, each showing that text."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    for text in pages:
        if text:
            c.drawString(72, 720, text)
        c.showPage()
    c.save()
    return buf.getvalue()


def wait_for_task(client, task_id, timeout=15.0, interval=0.05):
    """Poll the task endpoint until the task reaches a terminal status."""
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/tasks/{task_id}")
        assert response.status_code == 200
        data = response.json()
        if data["status"] in TERMINAL:
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"Task {task_id} still {data['status']} after {timeout}s")
        time.sleep(interval)


@pytest.fixture(scope="session", autouse=True)
def upload_dir():
    """Remove the shared upload directory after all tests."""
    path = os.environ["UPLOAD_DIR"]
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def pdf_factory():
    """Build PDFs with one page per text argument."""
    return make_pdf


@pytest.fixture
def poll_task():
    """Poll a task over HTTP until it is completed or failed."""
    return wait_for_task


@pytest.fixture
def two_page_pdf():
    """A two-page PDF with known text on each page."""
    return make_pdf("Page one content", "Page two content")


@pytest.fixture
def three_page_pdf():
    """A three-page PDF with known text on each page."""
    return make_pdf("Second doc first", "Second doc middle", "Second doc last")


@pytest.fixture
def file_store(tmp_path):
    """A file store with in-memory metadata and bytes under tmp_path."""
    return FileStore(InMemoryFileRecords(), LocalBlobStorage(tmp_path / "blobs"))


@pytest.fixture
def task_store():
    return InMemoryTaskStore()


@pytest.fixture
def engine(file_store, task_store):
    """A task engine with two workers, shut down after the test."""
    engine = TaskEngine(file_store, task_store, max_workers=2, render_dpi=36)
    yield engine
    engine.shutdown(wait=True)
