"""Models module exports"""
from .resume_record import Base, ResumeRecord
from .session import UploadSession, UploadStatus, TERMINAL_STATUSES

__all__ = ["Base", "ResumeRecord", "UploadSession", "UploadStatus", "TERMINAL_STATUSES"]
