"""
Pydantic models for toolloop API requests and responses.
This module defines the request and response schemas used by the toolloop API.
"""

from typing import (
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from toolloop.core.schema import Turn


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class SessionResponse(BaseModel):
    """Response with session information."""

    session_id: str
    is_processing: bool = False
    iteration_count: int = 0
    turns: int = 0


class MessageRequest(BaseModel):
    """Incoming user message."""

    message: str = Field(..., min_length=1, description="User message for the agent")
    session_id: Optional[str] = Field(None, description="Session ID for conversation context")


class MessageResponse(BaseModel):
    """API response returned to the caller once the loop is idle again."""

    session_id: str
    outcome: str
    reply: str
    turns: List[Turn] = Field(default_factory=list, description="Turns appended by this message")


class HistoryResponse(BaseModel):
    """Full transcript of one conversation."""

    session_id: str
    is_processing: bool
    iteration_count: int
    history: List[Turn]
