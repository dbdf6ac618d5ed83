from app.schemas.auth import AccountResponse, Token, ReadinessRequest, ReadinessResponse, MagicLinkRequest
from app.schemas.checkout import GuestCheckout, AuthenticatedCheckout, GuestCheckoutRequest, CheckoutResponse
from app.schemas.quiz import QuizSubmission, QuizSubmissionResponse
from app.schemas.webhook import CompletionEvent
