"""
Response envelopes shared by the queue and health routers.
"""

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Body of every 4xx/5xx response raised through HTTPException."""

    detail: str


class MessageResponse(BaseModel):
    """Acknowledgement for control operations (cancel, clear, unlock, remove)."""

    success: bool = True
    message: str
