from fastapi import APIRouter, Depends, HTTPException, status

from app.api import deps
from app.core.settings import settings
from app.schemas.recovery import (
    AnswersRequest,
    AssessmentOut,
    CompleteRecoveryResponse,
    QuestionOut,
    RevokeRequest,
    RevokeResponse,
    SessionRequest,
    SessionStatusResponse,
    StartRecoveryRequest,
    StartRecoveryResponse,
    TokenRequest,
    TokenStatsResponse,
    TokenValidationResponse,
    VerificationResponse,
)
from app.services.collaborators import ClientContext
from app.services.rate_limiter import RouteClass
from app.services.recovery import RecoveryService
from app.services.recovery_sessions import RecoverySession, VerificationOutcome
from app.services.risk_engine import RiskAssessment

router = APIRouter(prefix="/recovery", tags=["recovery"])


def _assessment_out(assessment: RiskAssessment | None) -> AssessmentOut | None:
    if assessment is None:
        return None
    return AssessmentOut(
        score=assessment.score,
        level=assessment.level.value,
        confidence=assessment.confidence,
        blocked=assessment.blocked,
        needs_questions=assessment.needs_questions,
        recommendations=list(assessment.recommendations),
    )


def _questions_out(session: RecoverySession) -> list[QuestionOut]:
    return [QuestionOut(**question.to_dict()) for question in session.questions]


def _verification_out(outcome: VerificationOutcome) -> VerificationResponse:
    session = outcome.session
    issued = outcome.issued_token
    expose = issued is not None and settings.expose_tokens and not settings.is_production
    return VerificationResponse(
        session_id=session.session_id,
        state=session.state.value,
        assessment=_assessment_out(session.assessment),
        questions=_questions_out(session),
        token_expires_at=issued.expires_at if issued else None,
        token=issued.token if expose else None,
    )


@router.post("/start", response_model=StartRecoveryResponse, status_code=status.HTTP_201_CREATED)
async def start_recovery(
    payload: StartRecoveryRequest,
    client: ClientContext = Depends(deps.rate_limit(RouteClass.START)),
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> StartRecoveryResponse:
    session = await service.start_recovery(email=payload.email, phone=payload.phone, client=client)
    return StartRecoveryResponse(
        session_id=session.session_id,
        state=session.state.value,
        expires_at=session.expires_at,
    )


@router.post("/verify", response_model=VerificationResponse)
async def verify(
    payload: SessionRequest,
    client: ClientContext = Depends(deps.rate_limit(RouteClass.VERIFY)),
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> VerificationResponse:
    return _verification_out(await service.verify(payload.session_id))


@router.post("/answers", response_model=VerificationResponse)
async def submit_answers(
    payload: AnswersRequest,
    client: ClientContext = Depends(deps.rate_limit(RouteClass.VERIFY)),
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> VerificationResponse:
    return _verification_out(await service.submit_answers(payload.session_id, payload.answers))


@router.get("/sessions/{session_id}", response_model=SessionStatusResponse)
async def session_status(
    session_id: str,
    client: ClientContext = Depends(deps.rate_limit(RouteClass.VERIFY)),
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> SessionStatusResponse:
    session = await service.session_status(session_id)
    return SessionStatusResponse(
        session_id=session.session_id,
        state=session.state.value,
        identifier_kind=session.identifier.kind,
        created_at=session.created_at,
        expires_at=session.expires_at,
        verified_at=session.verified_at,
        completed_at=session.completed_at,
        assessment=_assessment_out(session.assessment),
        questions=_questions_out(session),
    )


@router.post("/token/validate", response_model=TokenValidationResponse)
async def validate_token(
    payload: TokenRequest,
    client: ClientContext = Depends(deps.rate_limit(RouteClass.TOKEN)),
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> TokenValidationResponse:
    result = await service.validate_token(payload.token)
    return TokenValidationResponse(valid=result.valid, user_id=result.user_id)


@router.post("/complete", response_model=CompleteRecoveryResponse)
async def complete_recovery(
    payload: TokenRequest,
    client: ClientContext = Depends(deps.rate_limit(RouteClass.TOKEN)),
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> CompleteRecoveryResponse:
    result = await service.complete_recovery(payload.token)
    return CompleteRecoveryResponse(
        confirmation_id=result.confirmation_id,
        user_id=result.user_id,
        session_id=result.session_id,
        completed_at=result.completed_at,
    )


@router.post("/revoke", response_model=RevokeResponse)
async def revoke_user_tokens(
    payload: RevokeRequest,
    client: ClientContext = Depends(deps.rate_limit(RouteClass.REVOKE)),
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> RevokeResponse:
    return RevokeResponse(revoked=await service.revoke_user_tokens(payload.user_id))


@router.get("/stats", response_model=TokenStatsResponse)
async def token_store_stats(
    client: ClientContext = Depends(deps.rate_limit(RouteClass.TOKEN)),
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> TokenStatsResponse:
    if settings.is_production:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    stats = await service.token_store_stats()
    return TokenStatsResponse(total=stats.total, active=stats.active, used=stats.used, expired=stats.expired)
