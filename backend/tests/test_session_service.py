"""Bearer session validation: timeouts, revocation, deactivated users."""

from datetime import timedelta

import pytest

from storefront.models import SessionToken
from storefront.services import session_service
from storefront.time_utils import utcnow


def test_token_is_stored_hashed(db_session, student):
    session, token = session_service.create_session(student.id)

    assert session.token_hash == session_service.hash_token(token)
    assert token not in session.token_hash
    assert session_service.validate_session(token).user.id == student.id


def test_unknown_user(db_session):
    with pytest.raises(ValueError):
        session_service.create_session(999999)


def test_inactive_user_cannot_get_token(db_session, student):
    student.is_active = False
    db_session.commit()

    with pytest.raises(ValueError):
        session_service.create_session(student.id)


def test_deactivated_user_loses_session(db_session, student, student_token):
    student.is_active = False
    db_session.commit()

    assert session_service.validate_session(student_token) is None
    assert db_session.query(SessionToken).one().is_revoked


def test_expired_session(db_session, student):
    session, token = session_service.create_session(student.id)
    session.expires_at = utcnow() - timedelta(minutes=1)
    db_session.commit()

    assert session_service.validate_session(token) is None


def test_idle_session_is_revoked(db_session, student):
    session, token = session_service.create_session(student.id)
    session.last_used_at = utcnow() - session_service.SESSION_IDLE_TIMEOUT - timedelta(minutes=1)
    db_session.commit()

    assert session_service.validate_session(token) is None
    db_session.expire_all()
    assert db_session.get(SessionToken, session.id).is_revoked


def test_revoke(db_session, student, student_token):
    assert session_service.revoke_session(student_token) is True
    assert session_service.revoke_session(student_token) is False
    assert session_service.validate_session(student_token) is None
