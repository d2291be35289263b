from datetime import datetime

from pydantic import BaseModel


class UploadResponse(BaseModel):
    key: str
    filename: str
    uploaded_at: datetime


class FileInfo(BaseModel):
    name: str


class StatusResponse(BaseModel):
    alive: datetime
    file: FileInfo | None = None


class HealthResponse(BaseModel):
    status: str
    environment: str
    sessions: int
