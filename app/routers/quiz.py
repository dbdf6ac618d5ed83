"""Quiz completion: lead capture only, no account is created here."""
from fastapi import APIRouter, Depends

from app.dependencies import get_session_linker
from app.schemas.quiz import QuizSubmission, QuizSubmissionResponse
from app.services.session_linker import SessionLinker

router = APIRouter(prefix="/quiz", tags=["quiz"])


@router.post("/submit", response_model=QuizSubmissionResponse)
def submit_quiz(data: QuizSubmission, linker: SessionLinker = Depends(get_session_linker)):
    funnel = linker.record(
        data.session_id.strip(),
        data.email,
        quiz_answers=data.responses.model_dump(exclude_none=True),
        source=data.source or "quiz",
    )
    return QuizSubmissionResponse(session_id=funnel.session_id)
