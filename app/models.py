"""
Pydantic models for share link request/response validation.
"""
from pydantic import BaseModel, Field

import settings


class ShareRequest(BaseModel):
    """Request model for creating a new share link."""
    content: str = Field(max_length=settings.MAX_CODE_SIZE)


class ShareResponse(BaseModel):
    """Response model after creating a share link."""
    share_id: str
    url: str
    expires_at: str


class SharedCodeResponse(BaseModel):
    """Response model for a loaded share."""
    share_id: str
    content: str
