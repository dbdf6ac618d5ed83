"""Quiz submission schemas."""
from pydantic import BaseModel, EmailStr, Field


class QuizResponses(BaseModel):
    character_type: str
    body_type: str
    personality: str | None = None


class QuizSubmission(BaseModel):
    email: EmailStr
    session_id: str = Field(min_length=1)
    responses: QuizResponses
    source: str | None = None


class QuizSubmissionResponse(BaseModel):
    success: bool = True
    session_id: str
    lead_captured: bool = True
