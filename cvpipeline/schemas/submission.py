"""
Pydantic schemas for uploaded files and applicant data
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class CVMetadata(BaseModel):
    """Declared metadata that accompanies an uploaded CV"""
    original_filename: str = Field(..., min_length=1, max_length=255)
    mime_type: str
    size: int = Field(0, ge=0, description="Declared size in bytes")


class StoredFileMetadata(BaseModel):
    """Metadata read back from a stored CV file"""
    filename: str
    path: str
    size: int
    mime_type: str
    created_at: datetime


class ApplicantData(BaseModel):
    """Applicant fields captured at upload, immutable afterwards"""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    phone: str = Field("", max_length=50)
    ip_address: Optional[str] = Field(None, max_length=64)
    user_agent: Optional[str] = Field(None, max_length=500)
