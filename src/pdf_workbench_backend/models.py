from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TaskKind(str, Enum):
    EXTRACT_TEXT = "extract_text"
    MERGE = "merge"
    CONVERT_TO_IMAGES = "convert_to_image"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoredFileResponse(CamelModel):
    id: int
    filename: str
    original_filename: str
    filesize: int
    mimetype: str
    uploaded_at: datetime
    path: str


class OutputFileResponse(BaseModel):
    id: int
    filename: str
    type: str


class TaskResponse(CamelModel):
    id: int
    type: TaskKind
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    input_files: List[int]
    output_files: List[OutputFileResponse] = Field(default_factory=list)
    error: Optional[str] = None


class ExtractTextRequest(CamelModel):
    file_ids: List[int] = Field(min_length=1)


class MergeRequest(CamelModel):
    file_ids: List[int] = Field(min_length=2)
    output_filename: str = Field(default="merged.pdf", min_length=1)


class ConvertToImagesRequest(CamelModel):
    file_id: int
    format: Literal["png", "jpg"] = "png"


class MessageResponse(BaseModel):
    message: str
