from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StartRecoveryRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=32)


class StartRecoveryResponse(BaseModel):
    session_id: str
    state: str
    expires_at: datetime
    message: str = "If an account matches, recovery instructions will follow verification"


class SessionRequest(BaseModel):
    session_id: str = Field(max_length=64)


class QuestionOut(BaseModel):
    id: str
    prompt: str
    kind: str
    required: bool
    options: List[str] = []
    hint: Optional[str] = None


class AssessmentOut(BaseModel):
    score: float
    level: str
    confidence: float
    blocked: bool
    needs_questions: bool
    recommendations: List[str] = []


class VerificationResponse(BaseModel):
    session_id: str
    state: str
    assessment: Optional[AssessmentOut] = None
    questions: List[QuestionOut] = []
    token_expires_at: Optional[datetime] = None
    # Only populated outside production when token exposure is switched on.
    token: Optional[str] = None


class AnswersRequest(BaseModel):
    session_id: str = Field(max_length=64)
    answers: Dict[str, Any]


class SessionStatusResponse(BaseModel):
    session_id: str
    state: str
    identifier_kind: str
    created_at: datetime
    expires_at: datetime
    verified_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    assessment: Optional[AssessmentOut] = None
    questions: List[QuestionOut] = []


class TokenRequest(BaseModel):
    token: str = Field(max_length=256)


class TokenValidationResponse(BaseModel):
    valid: bool
    user_id: str | None = None


class CompleteRecoveryResponse(BaseModel):
    confirmation_id: str
    user_id: str
    session_id: str
    completed_at: datetime


class RevokeRequest(BaseModel):
    user_id: str = Field(max_length=254)


class RevokeResponse(BaseModel):
    revoked: int


class TokenStatsResponse(BaseModel):
    total: int
    active: int
    used: int
    expired: int
