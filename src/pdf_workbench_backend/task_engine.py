"""
Background execution of processing tasks.

This module runs the three transformation kinds against the file store and
drives each task through its state machine:
- Queueing accepted tasks onto a bounded worker pool
- Moving a task to processing before any work starts
- Recording outputs on completion or the error message on failure
- Holding leases on input files while a task is in flight

Per-item errors (one input file, one page) are logged and skipped; only
errors outside the per-item loop fail the whole task.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from threading import Lock
from typing import Any, Callable, Dict, Optional

from . import pdf_tools
from .file_store import FileStore, StoredFile
from .models import TaskKind, TaskStatus
from .task_store import OutputFile, ProcessingTask, TaskNotFoundError, TaskStore
from .utils import ensure_pdf_extension, epoch_millis, strip_pdf_suffix

logger = logging.getLogger(__name__)

Handler = Callable[..., list[OutputFile]]


def _output_ref(record: StoredFile) -> OutputFile:
    return OutputFile(id=record.id, filename=record.display_name, content_type=record.content_type)


class TaskEngine:
    """
    Work queue and worker pool for processing tasks.

    Accepted tasks wait in the executor's queue until one of ``max_workers``
    threads picks them up; each worker runs exactly one task at a time.

    Thread Safety:
        Counters and the future registry are protected by a lock. Task state
        is only written through the task store, whose updates are atomic.

    Attributes:
        file_store: Source of inputs and destination of outputs
        task_store: Record of task state
    """

    def __init__(
        self,
        file_store: FileStore,
        task_store: TaskStore,
        max_workers: int = 1,
        render_dpi: int = 144,
    ) -> None:
        """
        Initialize the engine.

        Args:
            file_store: File store holding task inputs and outputs
            task_store: Task store the engine writes status changes to
            max_workers: Number of tasks that may run concurrently (default: 1)
            render_dpi: Resolution used when rasterizing pages
        """
        self.file_store = file_store
        self.task_store = task_store
        self.render_dpi = render_dpi
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="task-worker")
        self._futures: Dict[int, Future] = {}
        self._lock = Lock()
        self._queued = 0
        self._running = 0
        self._finished = 0
        self._handlers: Dict[TaskKind, Handler] = {
            TaskKind.EXTRACT_TEXT: self._extract_text,
            TaskKind.MERGE: self._merge,
            TaskKind.CONVERT_TO_IMAGES: self._convert_to_images,
        }

    def submit(self, task: ProcessingTask, **options: Any) -> ProcessingTask:
        """
        Queue a pending task for background execution.

        Leases are taken on the task's input files before this returns, so a
        file named by an accepted task cannot be deleted until the task ends.

        Args:
            task: A freshly created pending task
            **options: Kind-specific options (``output_filename`` for merge,
                ``image_format`` for image conversion)

        Returns:
            The task snapshot as accepted (still pending)
        """
        handler = self._handlers[task.kind]
        leased = self.file_store.acquire(task.input_file_ids)
        try:
            with self._lock:
                future = self._executor.submit(self._run_task, task.id, handler, leased, options)
                self._futures[task.id] = future
                self._queued += 1
        except RuntimeError:
            # executor already shut down
            self.file_store.release(leased)
            raise
        future.add_done_callback(partial(self._forget, task.id))
        logger.info(f"Task {task.id} ({task.kind.value}) accepted with inputs {list(task.input_file_ids)}")
        return task

    def wait(self, task_id: int, timeout: Optional[float] = None) -> ProcessingTask:
        """
        Block until a submitted task has finished and return its final snapshot.

        Raises:
            TaskNotFoundError: if the task store has no such task
            concurrent.futures.TimeoutError: if ``timeout`` elapses first
        """
        with self._lock:
            future = self._futures.get(task_id)
        if future is not None:
            future.result(timeout=timeout)
        task = self.task_store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def stats(self) -> Dict[str, int]:
        """Counts of queued, running and finished tasks since start."""
        with self._lock:
            return {"queued": self._queued, "running": self._running, "finished": self._finished}

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _forget(self, task_id: int, _future: Future) -> None:
        with self._lock:
            self._futures.pop(task_id, None)

    def _run_task(self, task_id: int, handler: Handler, leased: list[int], options: Dict[str, Any]) -> None:
        """
        Execute one task (runs in a worker thread).

        Any exception escaping the handler marks the task failed with the
        exception's message.
        """
        with self._lock:
            self._queued -= 1
            self._running += 1

        try:
            task = self.task_store.update(task_id, status=TaskStatus.PROCESSING)
            if task is None:
                raise TaskNotFoundError(task_id)
            logger.info(f"Task {task_id} started")

            try:
                outputs = handler(task, **options)
            except Exception as exc:
                logger.exception(f"Task {task_id} failed: {exc}")
                self.task_store.update(task_id, status=TaskStatus.FAILED, error=str(exc) or "Unknown error")
            else:
                self.task_store.update(task_id, status=TaskStatus.COMPLETED, output_files=outputs)
                logger.info(f"Task {task_id} completed with {len(outputs)} output file(s)")
        finally:
            self.file_store.release(leased)
            with self._lock:
                self._running -= 1
                self._finished += 1

    def _extract_text(self, task: ProcessingTask) -> list[OutputFile]:
        outputs: list[OutputFile] = []
        for file_id in task.input_file_ids:
            record = self.file_store.get(file_id)
            if record is None:
                logger.warning(f"Task {task.id}: input file {file_id} not found, skipping")
                continue

            try:
                reader = pdf_tools.open_document(self.file_store.read(file_id))
                text = pdf_tools.extract_text(reader)
                filename = f"{strip_pdf_suffix(record.display_name)}-text-{epoch_millis()}.txt"
                saved = self.file_store.save(text.encode("utf-8"), filename, "text/plain")
            except Exception as exc:
                logger.error(f"Task {task.id}: text extraction from {record.display_name} failed: {exc}")
                continue

            outputs.append(_output_ref(saved))
        return outputs

    def _merge(self, task: ProcessingTask, output_filename: str = "merged.pdf") -> list[OutputFile]:
        document = pdf_tools.new_document()
        for file_id in task.input_file_ids:
            record = self.file_store.get(file_id)
            if record is None:
                logger.warning(f"Task {task.id}: input file {file_id} not found, skipping")
                continue

            try:
                pages = pdf_tools.append_pages(document, pdf_tools.open_document(self.file_store.read(file_id)))
            except Exception as exc:
                logger.error(f"Task {task.id}: merging {record.display_name} failed: {exc}")
                continue
            logger.debug(f"Task {task.id}: appended {pages} page(s) from {record.display_name}")

        saved = self.file_store.save(
            pdf_tools.serialize(document),
            ensure_pdf_extension(output_filename),
            "application/pdf",
        )
        return [_output_ref(saved)]

    def _convert_to_images(self, task: ProcessingTask, image_format: str = "png") -> list[OutputFile]:
        file_id = task.input_file_ids[0]
        record = self.file_store.get(file_id)
        if record is None:
            raise FileNotFoundError("File not found")

        _, content_type = pdf_tools.image_format_details(image_format)
        data = self.file_store.read(file_id)
        stem = strip_pdf_suffix(record.display_name)
        outputs: list[OutputFile] = []

        with pdf_tools.RENDER_LOCK:
            with pdf_tools.open_for_render(data) as document:
                for index in range(document.page_count):
                    try:
                        image = pdf_tools.render_page(document, index, image_format, self.render_dpi)
                        filename = f"{stem}-page-{index + 1}-{epoch_millis()}.{image_format}"
                        saved = self.file_store.save(image, filename, content_type)
                    except Exception as exc:
                        logger.error(f"Task {task.id}: rendering page {index + 1} of {record.display_name} failed: {exc}")
                        continue
                    outputs.append(_output_ref(saved))
        return outputs
