"""
PDF Workbench Backend - REST API for asynchronous PDF transformations

This package provides a FastAPI-based web service that lets a browser client
upload PDF documents, run whole-document transformations on them in the
background, and download the results. It enables:

- PDF uploads with type and size validation
- Text extraction, merging, and page-by-page rendering to images
- Tracked background tasks with a pollable status endpoint
- Swappable storage: in-memory or SQLite metadata, local or S3 bytes

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - task_engine: Worker pool and the task state machine
    - task_store: Processing task records and transition rules
    - file_store: Stored file metadata, content and input leases
    - database: SQLite implementations of the stores
    - blob_storage: Local directory and S3 byte storage
    - pdf_tools: PDF parsing, merging and rendering helpers
    - models: Pydantic models for request/response validation
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn pdf_workbench_backend.main:app --reload --host 0.0.0.0 --port 8000

Architecture Principles:
    - Task creation is synchronous; transformation work never runs on the request thread
    - Status only moves forward: pending, processing, then completed or failed
    - Readers always see a complete task snapshot
    - Files held by a running task cannot be deleted
"""
