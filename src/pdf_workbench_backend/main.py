from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from omegaconf import DictConfig
from starlette.concurrency import run_in_threadpool

from .blob_storage import BlobStorage, LocalBlobStorage, S3BlobStorage
from .configuration import load_config
from .database import SqliteDatabase, SqliteFileRecords, SqliteTaskStore
from .file_store import FileInUseError, FileStore, InMemoryFileRecords, StoredFile
from .models import (
    ConvertToImagesRequest,
    ExtractTextRequest,
    MergeRequest,
    MessageResponse,
    StoredFileResponse,
    TaskKind,
    TaskResponse,
)
from .task_engine import TaskEngine
from .task_store import InMemoryTaskStore, TaskStore

logger = logging.getLogger(__name__)

config = load_config()
logging.basicConfig(level=config.log_level.upper(), format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def build_blob_storage(config: DictConfig) -> BlobStorage:
    if config.storage.backend == "s3":
        return S3BlobStorage(bucket=config.storage.s3_bucket, prefix=config.storage.s3_prefix)
    return LocalBlobStorage(Path(config.storage.upload_dir))


def build_stores(config: DictConfig) -> tuple[FileStore, TaskStore]:
    blobs = build_blob_storage(config)
    if config.database.backend == "sqlite":
        database = SqliteDatabase(Path(config.database.path))
        return FileStore(SqliteFileRecords(database), blobs), SqliteTaskStore(database)
    return FileStore(InMemoryFileRecords(), blobs), InMemoryTaskStore()


file_store, task_store = build_stores(config)
task_engine = TaskEngine(
    file_store,
    task_store,
    max_workers=config.workers.max_workers,
    render_dpi=config.render.dpi,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info(
        f"PDF Workbench API ready (storage={config.storage.backend}, "
        f"database={config.database.backend}, workers={config.workers.max_workers})"
    )
    yield
    task_engine.shutdown(wait=True)


app = FastAPI(title="PDF Workbench API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_file_store() -> FileStore:
    return file_store


def get_task_store() -> TaskStore:
    return task_store


def get_task_engine() -> TaskEngine:
    return task_engine


def _content_disposition(disposition: str, filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"{disposition}; filename*=utf-8''{quoted}"
    return f'{disposition}; filename="{filename}"'


def _require_file(store: FileStore, file_id: int, detail: str = "File not found") -> StoredFile:
    record = store.get(file_id)
    if record is None:
        raise HTTPException(status_code=404, detail=detail)
    return record


def _stream_file(store: FileStore, record: StoredFile, disposition: str) -> StreamingResponse:
    if not store.has_content(record):
        raise HTTPException(status_code=404, detail="File content not found")
    return StreamingResponse(
        store.iter_content(record),
        media_type=record.content_type,
        headers={"Content-Disposition": _content_disposition(disposition, record.display_name)},
    )


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/files", response_model=list[StoredFileResponse])
def list_files(store: FileStore = Depends(get_file_store)) -> list[StoredFileResponse]:
    return [record.to_response() for record in store.list()]


@app.post("/upload", response_model=list[StoredFileResponse], status_code=201)
async def upload_files(
    files: Optional[List[UploadFile]] = File(None),
    store: FileStore = Depends(get_file_store),
) -> list[StoredFileResponse]:
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")

    limits = config.upload
    if len(files) > limits.max_files:
        raise HTTPException(status_code=400, detail=f"At most {limits.max_files} files can be uploaded at once")

    # validate every part before saving any of them
    accepted = []
    for upload in files:
        content_type = upload.content_type or ""
        if content_type not in limits.allowed_mimetypes:
            raise HTTPException(status_code=400, detail="Only PDF files are allowed")
        content = await upload.read(limits.max_file_size + 1)
        await upload.close()
        if len(content) > limits.max_file_size:
            raise HTTPException(
                status_code=413,
                detail=f"{upload.filename} exceeds the {limits.max_file_size} byte upload limit",
            )
        accepted.append((content, upload.filename or "document.pdf", content_type))

    saved = []
    for content, filename, content_type in accepted:
        record = await run_in_threadpool(store.save, content, filename, content_type)
        logger.info(f"Stored upload {filename} as file {record.id} ({record.size_bytes} bytes)")
        saved.append(record.to_response())
    return saved


@app.delete("/files/{file_id}", response_model=MessageResponse)
def delete_file(file_id: int, store: FileStore = Depends(get_file_store)) -> MessageResponse:
    try:
        deleted = store.delete(file_id)
    except FileInUseError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="File not found")
    return MessageResponse(message="File deleted successfully")


@app.get("/files/{file_id}/view")
def view_file(file_id: int, store: FileStore = Depends(get_file_store)) -> StreamingResponse:
    return _stream_file(store, _require_file(store, file_id), "inline")


@app.get("/files/{file_id}/download")
def download_file(file_id: int, store: FileStore = Depends(get_file_store)) -> StreamingResponse:
    return _stream_file(store, _require_file(store, file_id), "attachment")


@app.post("/extract-text", response_model=TaskResponse, status_code=202)
def extract_text(
    request: ExtractTextRequest,
    tasks: TaskStore = Depends(get_task_store),
    engine: TaskEngine = Depends(get_task_engine),
) -> TaskResponse:
    task = tasks.create(TaskKind.EXTRACT_TEXT, request.file_ids)
    return engine.submit(task).to_response()


@app.post("/merge", response_model=TaskResponse, status_code=202)
def merge_files(
    request: MergeRequest,
    tasks: TaskStore = Depends(get_task_store),
    engine: TaskEngine = Depends(get_task_engine),
) -> TaskResponse:
    task = tasks.create(TaskKind.MERGE, request.file_ids)
    return engine.submit(task, output_filename=request.output_filename).to_response()


@app.post("/convert-to-images", response_model=TaskResponse, status_code=202)
def convert_to_images(
    request: ConvertToImagesRequest,
    tasks: TaskStore = Depends(get_task_store),
    engine: TaskEngine = Depends(get_task_engine),
) -> TaskResponse:
    task = tasks.create(TaskKind.CONVERT_TO_IMAGES, [request.file_id])
    return engine.submit(task, image_format=request.format).to_response()


@app.get("/tasks/{task_id}", response_model=TaskResponse)
def get_task(task_id: int, tasks: TaskStore = Depends(get_task_store)) -> TaskResponse:
    task = tasks.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task.to_response()


@app.get("/results/{file_id}")
def download_result(file_id: int, store: FileStore = Depends(get_file_store)) -> StreamingResponse:
    record = _require_file(store, file_id, detail="Result file not found")
    return _stream_file(store, record, "attachment")
