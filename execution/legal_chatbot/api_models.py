"""
Pydantic models for the Legal Chatbot FastAPI backend.

The ask endpoint reads its parameters from the query string, a JSON body or
a form body and validates them in `routing.route`, so it has no request
model; these models describe the other payloads and the response shapes.
"""

from typing import Optional
from pydantic import BaseModel, Field


class CitationInfo(BaseModel):
    """A cited legal passage."""
    identifier: str
    title: str
    excerpt: str = ""
    url: Optional[str] = None
    source: str = ""
    relevance: Optional[float] = None


class AnswerResponse(BaseModel):
    """Answer envelope returned by the ask endpoint."""
    answer: str
    sources: list[CitationInfo]
    response_time: float
    conversation_token: Optional[str] = None
    language: str = "nl"
    error: Optional[str] = None
    failed_sources: list[str] = []


class ErrorResponse(BaseModel):
    """Body of validation and access errors."""
    error: str
    errors: list[str] = []
    reason: Optional[str] = None


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    corpus_size: Optional[int] = None
    database: str
    sources: list[str] = []


# =========================================================================
# Feedback & saved answers
# =========================================================================

# Fields are optional here; FeedbackService reports missing values as
# validation errors in the same shape as other record errors.

class FeedbackRequest(BaseModel):
    """Request body for answer feedback."""
    question: Optional[str] = None
    answer: Optional[str] = None
    feedback_type: Optional[str] = None
    language: Optional[str] = None
    source: Optional[str] = None


class SaveAnswerRequest(BaseModel):
    """Request body for saving an answer."""
    question: Optional[str] = None
    answer: Optional[str] = None
    sources: Optional[list] = None
    language: Optional[str] = None
    title: Optional[str] = Field(None, max_length=255)
    category: Optional[str] = Field(None, max_length=100)


class SuccessResponse(BaseModel):
    success: bool = True
    id: Optional[str] = None


class SavedAnswerInfo(BaseModel):
    """A saved answer in a listing (answer text truncated)."""
    id: str
    question: str
    answer: str
    sources: Optional[list] = None
    language: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[str] = None


class SavedAnswersResponse(BaseModel):
    """Response body for the saved-answers listing."""
    answers: list[SavedAnswerInfo]
    categories: list[str]
