import asyncio

import pytest

from app.core.errors import (
    InvalidSessionState,
    RecoveryBlocked,
    SessionExpired,
    SessionNotFound,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
    ValidationError,
)
from app.services.collaborators import ClientContext
from app.services.recovery_sessions import SESSION_NAMESPACE, TOKEN_INDEX_NAMESPACE, SessionState
from app.services.risk_engine import RiskFactors, RiskLevel
from app.utils.identifiers import Identifier
from conftest import ALICE_EMAIL, ALICE_ID, scenario_factors

ALICE = Identifier(ALICE_EMAIL, "email")
CLIENT = ClientContext(ip="203.0.113.7")


@pytest.fixture
def sessions(service):
    return service.sessions


async def _started(sessions, identifier: Identifier = ALICE):
    return await sessions.start(identifier, CLIENT)


@pytest.mark.asyncio
async def test_scenario_low_risk_verifies_immediately_and_issues_token(sessions, delivery):
    session = await _started(sessions)
    assert session.state is SessionState.STARTED
    assert session.user_id == ALICE_ID

    outcome = await sessions.verify(session.session_id)

    assert outcome.session.state is SessionState.VERIFIED
    assert outcome.assessment.score == 10.0
    assert outcome.assessment.level is RiskLevel.LOW
    assert outcome.issued_token is not None
    assert delivery.last_token == outcome.issued_token.token


@pytest.mark.asyncio
async def test_scenario_high_risk_blocks_without_token(sessions, factors, delivery):
    factors.default = RiskFactors.uniform(20)
    session = await _started(sessions)

    outcome = await sessions.verify(session.session_id)

    assert outcome.blocked is True
    assert outcome.assessment.score == 80.0
    assert outcome.issued_token is None
    assert delivery.sent == []
    assert (await sessions.get(session.session_id)).state is SessionState.BLOCKED


@pytest.mark.asyncio
async def test_scenario_medium_risk_asks_then_verifies(sessions, factors, delivery):
    factors.default = scenario_factors(ip_reputation=40, rest=80)
    session = await _started(sessions)

    outcome = await sessions.verify(session.session_id)
    assert outcome.session.state is SessionState.AWAITING_ANSWERS
    assert outcome.assessment.score == 30.0
    assert [q.id for q in outcome.questions] == ["location"]
    assert delivery.sent == []

    answered = await sessions.submit_answers(session.session_id, {"location": "Boston"})

    assert answered.session.state is SessionState.VERIFIED
    assert answered.assessment.score == 25.0
    assert answered.assessment.level is RiskLevel.LOW
    assert answered.issued_token is not None
    assert len(delivery.sent) == 1


@pytest.mark.asyncio
async def test_denied_verification_blocks(sessions, factors):
    factors.default = RiskFactors(50, 50, 50, 50, 50, 0)
    session = await _started(sessions)
    outcome = await sessions.verify(session.session_id)
    assert [q.id for q in outcome.questions] == ["verification"]

    blocked = await sessions.submit_answers(session.session_id, {"verification": "no"})

    assert blocked.session.state is SessionState.BLOCKED
    assert blocked.issued_token is None
    with pytest.raises(RecoveryBlocked):
        await sessions.submit_answers(session.session_id, {"verification": "yes"})


@pytest.mark.asyncio
async def test_verify_is_idempotent_and_never_mints_twice(sessions, delivery):
    session = await _started(sessions)

    first = await sessions.verify(session.session_id)
    second = await sessions.verify(session.session_id)

    assert second.session.state is SessionState.VERIFIED
    assert second.issued_token is None
    assert second.session.token_id == first.session.token_id
    assert len(delivery.sent) == 1


@pytest.mark.asyncio
async def test_concurrent_verify_mints_exactly_one_token(sessions, delivery):
    session = await _started(sessions)

    outcomes = await asyncio.gather(*(sessions.verify(session.session_id) for _ in range(5)))

    assert sum(1 for o in outcomes if o.issued_token is not None) == 1
    assert len(delivery.sent) == 1


@pytest.mark.asyncio
async def test_submit_answers_outside_awaiting_state(sessions):
    session = await _started(sessions)
    with pytest.raises(InvalidSessionState):
        await sessions.submit_answers(session.session_id, {"location": "Boston"})

    await sessions.verify(session.session_id)
    outcome = await sessions.submit_answers(session.session_id, {"location": "Boston"})
    assert outcome.session.state is SessionState.VERIFIED
    assert outcome.issued_token is None


@pytest.mark.asyncio
async def test_unknown_identifier_verifies_without_token(sessions, delivery, service):
    stranger = Identifier("stranger@example.com", "email")
    session = await _started(sessions, stranger)
    assert session.user_id is None

    outcome = await sessions.verify(session.session_id)

    assert outcome.session.state is SessionState.VERIFIED
    assert outcome.issued_token is None
    assert delivery.sent == []
    assert (await service.tokens.stats()).total == 0


@pytest.mark.asyncio
async def test_unknown_session(sessions):
    with pytest.raises(SessionNotFound):
        await sessions.verify("does-not-exist")
    with pytest.raises(ValidationError):
        await sessions.verify("")


@pytest.mark.asyncio
async def test_session_expires_after_ttl(sessions, clock):
    session = await _started(sessions)
    clock.advance(minutes=16)

    with pytest.raises(SessionExpired):
        await sessions.verify(session.session_id)
    assert (await sessions.get(session.session_id)).state is SessionState.EXPIRED
    with pytest.raises(SessionExpired):
        await sessions.verify(session.session_id)


@pytest.mark.asyncio
async def test_get_marks_expired_lazily(sessions, clock):
    session = await _started(sessions)
    clock.advance(minutes=15, seconds=1)

    assert (await sessions.get(session.session_id)).state is SessionState.EXPIRED


@pytest.mark.asyncio
async def test_complete_consumes_token_once(sessions):
    session = await _started(sessions)
    token = (await sessions.verify(session.session_id)).issued_token.token

    result = await sessions.complete(token)

    assert result.user_id == ALICE_ID
    assert result.session_id == session.session_id
    assert result.confirmation_id
    stored = await sessions.get(session.session_id)
    assert stored.state is SessionState.COMPLETED
    assert stored.confirmation_id == result.confirmation_id
    with pytest.raises(TokenAlreadyUsed):
        await sessions.complete(token)
    with pytest.raises(InvalidSessionState):
        await sessions.verify(session.session_id)


@pytest.mark.asyncio
async def test_concurrent_complete_has_one_winner(sessions):
    session = await _started(sessions)
    token = (await sessions.verify(session.session_id)).issued_token.token

    results = await asyncio.gather(*(sessions.complete(token) for _ in range(5)), return_exceptions=True)

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, TokenAlreadyUsed) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_complete_with_expired_token(sessions, clock):
    session = await _started(sessions)
    token = (await sessions.verify(session.session_id)).issued_token.token
    clock.advance(minutes=11)

    with pytest.raises(TokenExpired):
        await sessions.complete(token)


@pytest.mark.asyncio
async def test_complete_after_revoke(sessions, service):
    session = await _started(sessions)
    token = (await sessions.verify(session.session_id)).issued_token.token
    await service.tokens.revoke_all(ALICE_ID)

    with pytest.raises(TokenNotFound):
        await sessions.complete(token)


@pytest.mark.asyncio
async def test_complete_with_unknown_or_malformed_token(sessions):
    with pytest.raises(TokenNotFound):
        await sessions.complete("unknownid.secret")
    with pytest.raises(ValidationError):
        await sessions.complete("garbage")


@pytest.mark.asyncio
async def test_sweep_removes_long_expired_sessions(sessions, clock, record_store):
    session = await _started(sessions)
    await sessions.verify(session.session_id)
    clock.advance(minutes=30)
    assert await sessions.sweep_expired() == 0

    clock.advance(hours=1)
    assert await sessions.sweep_expired() == 1
    assert await record_store.count(SESSION_NAMESPACE) == 0
    assert await record_store.count(TOKEN_INDEX_NAMESPACE) == 0


@pytest.mark.asyncio
async def test_oversized_session_id_is_invalid(sessions):
    with pytest.raises(ValidationError, match="Invalid session ID"):
        await sessions.verify("x" * 65)


@pytest.mark.asyncio
async def test_unknown_answer_ids_keep_the_assessed_score(sessions, factors, delivery):
    factors.default = scenario_factors(ip_reputation=40, rest=80)
    session = await _started(sessions)
    await sessions.verify(session.session_id)

    outcome = await sessions.submit_answers(session.session_id, {"favourite_colour": "blue"})

    assert outcome.assessment.score == 30.0
    assert outcome.assessment.level is RiskLevel.MEDIUM
    assert outcome.session.state is SessionState.VERIFIED
    assert outcome.issued_token is not None
    assert len(delivery.sent) == 1
