from dataclasses import dataclass
from typing import BinaryIO

from pydantic import BaseModel, ConfigDict, Field


class UploadMetadataRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    saved_as: str = Field(alias="savedAs")
    url: str
    content_type: str = Field(alias="contentType")
    size: int
    uploaded_at: str = Field(alias="uploadedAt")

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)


class UploadResponse(BaseModel):
    message: str
    file: UploadMetadataRecord


class HealthResponse(BaseModel):
    ok: bool


class ErrorResponse(BaseModel):
    error: str


@dataclass
class UploadRequest:
    stream: BinaryIO
    filename: str
    content_type: str | None
    size: int | None = None
