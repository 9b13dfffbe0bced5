"""Download redemption response schema."""

from pydantic import BaseModel, Field


class DownloadResponse(BaseModel):
    """Short-lived file location plus file metadata."""

    file_location: str = Field(description="Signed URL valid for a few minutes")
    file_name: str
    mime_type: str
    size: int = Field(description="File size in bytes")
