"""Schemas module exports"""
from .upload import (
    InitUploadRequest,
    InitUploadResponse,
    ChunkAck,
    ProgressResponse,
    CompleteUploadRequest,
    CompleteUploadResponse,
    CancelUploadResponse,
    ProgressEvent,
)

__all__ = [
    "InitUploadRequest",
    "InitUploadResponse",
    "ChunkAck",
    "ProgressResponse",
    "CompleteUploadRequest",
    "CompleteUploadResponse",
    "CancelUploadResponse",
    "ProgressEvent",
]
