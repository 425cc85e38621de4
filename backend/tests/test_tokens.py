"""
Refresh token rotation and session tests.

Verifies:
- rotation revokes the presented token and links it to its successor
- replaying a rotated token revokes the whole chain and its sessions
- expired, unknown and deleted-user tokens are rejected
- a new login on the same device supersedes the previous token
- cleanup removes only stale rows
"""

from datetime import timedelta

import pytest

from marketplace.errors import InvalidToken, TokenReused
from marketplace.models import RefreshToken, SecurityEvent, SessionToken
from marketplace.models.identity import is_token_active
from marketplace.services import auth_service, maintenance_service, session_service, token_service
from marketplace.services.session_service import hash_token
from marketplace.time_utils import utcnow


def _record(db_session, raw):
    record = db_session.query(RefreshToken).filter_by(token_hash=hash_token(raw)).one()
    db_session.refresh(record)
    return record


class TestRotation:

    def test_rotation_issues_a_linked_successor(self, db_session, buyer):
        first = token_service.issue_tokens(buyer, device_id="phone")

        second = token_service.rotate_refresh_token(first.refresh_token)

        old = _record(db_session, first.refresh_token)
        new = _record(db_session, second.refresh_token)
        assert old.is_revoked is True
        assert old.reason_revoked == token_service.REASON_ROTATED
        assert old.replaced_by_token_id == new.id
        assert new.is_revoked is False
        assert new.device_id == "phone"
        assert not is_token_active(old)
        assert new.to_dict()["is_active"] is True

    def test_rotated_pair_gives_a_working_access_token(self, buyer):
        first = token_service.issue_tokens(buyer)

        second = token_service.rotate_refresh_token(first.refresh_token)

        context = session_service.validate_session(second.access_token)
        assert context is not None
        assert context.user.id == buyer.id

    def test_unknown_token(self, buyer):
        with pytest.raises(InvalidToken):
            token_service.rotate_refresh_token("not-a-real-token")

    def test_expired_token(self, db_session, buyer):
        pair = token_service.issue_tokens(buyer)
        record = _record(db_session, pair.refresh_token)
        record.expires_at = utcnow() - timedelta(seconds=1)
        db_session.commit()

        with pytest.raises(InvalidToken):
            token_service.rotate_refresh_token(pair.refresh_token)

    def test_deleted_user_cannot_rotate(self, buyer):
        pair = token_service.issue_tokens(buyer)
        auth_service.soft_delete_user(buyer.id)

        # soft delete revoked the token, so a replay is reported as reuse
        with pytest.raises(TokenReused):
            token_service.rotate_refresh_token(pair.refresh_token)


class TestReuseDetection:

    def test_replaying_t1_revokes_t2(self, db_session, buyer):
        t1 = token_service.issue_tokens(buyer)
        t2 = token_service.rotate_refresh_token(t1.refresh_token)

        with pytest.raises(TokenReused) as exc:
            token_service.rotate_refresh_token(t1.refresh_token)

        assert exc.value.details["force_reauth"] is True
        t2_record = _record(db_session, t2.refresh_token)
        assert t2_record.is_revoked is True
        assert t2_record.reason_revoked == token_service.REASON_REUSE

    def test_reuse_revokes_sessions_of_the_chain(self, buyer):
        t1 = token_service.issue_tokens(buyer)
        t2 = token_service.rotate_refresh_token(t1.refresh_token)

        with pytest.raises(TokenReused):
            token_service.rotate_refresh_token(t1.refresh_token)

        assert session_service.validate_session(t2.access_token) is None
        assert session_service.validate_session(t1.access_token) is None

    def test_reuse_revokes_the_whole_chain_forward(self, db_session, buyer):
        t1 = token_service.issue_tokens(buyer)
        t2 = token_service.rotate_refresh_token(t1.refresh_token)
        t3 = token_service.rotate_refresh_token(t2.refresh_token)

        with pytest.raises(TokenReused) as exc:
            token_service.rotate_refresh_token(t1.refresh_token)

        assert exc.value.details["revoked_tokens"] == 1
        assert _record(db_session, t3.refresh_token).is_revoked is True
        with pytest.raises(TokenReused):
            token_service.rotate_refresh_token(t3.refresh_token)

    def test_reuse_is_audited(self, db_session, buyer):
        t1 = token_service.issue_tokens(buyer)
        token_service.rotate_refresh_token(t1.refresh_token)

        with pytest.raises(TokenReused):
            token_service.rotate_refresh_token(t1.refresh_token)

        assert db_session.query(SecurityEvent).filter_by(
            event_type="TOKEN_REUSE_DETECTED", user_id=buyer.id,
        ).count() == 1

    def test_other_chains_are_untouched(self, db_session, buyer):
        laptop = token_service.issue_tokens(buyer, device_id="laptop")
        phone = token_service.issue_tokens(buyer, device_id="phone")
        token_service.rotate_refresh_token(phone.refresh_token)

        with pytest.raises(TokenReused):
            token_service.rotate_refresh_token(phone.refresh_token)

        assert _record(db_session, laptop.refresh_token).is_revoked is False


class TestIssueAndRevoke:

    def test_same_device_login_supersedes_previous_token(self, db_session, buyer):
        first = token_service.issue_tokens(buyer, device_id="tablet")
        token_service.issue_tokens(buyer, device_id="tablet")

        record = _record(db_session, first.refresh_token)
        assert record.is_revoked is True
        assert record.reason_revoked == token_service.REASON_SUPERSEDED
        assert len(token_service.get_active_tokens(buyer.id)) == 1

    def test_logout_revokes_token_and_sessions(self, buyer):
        pair = token_service.issue_tokens(buyer)

        assert token_service.revoke_refresh_token(pair.refresh_token) is True
        assert token_service.revoke_refresh_token(pair.refresh_token) is False
        assert session_service.validate_session(pair.access_token) is None

    def test_revoke_all(self, buyer):
        pairs = [token_service.issue_tokens(buyer, device_id=f"d{i}") for i in range(3)]

        assert token_service.revoke_all_user_tokens(buyer.id) == 3
        assert all(session_service.validate_session(p.access_token) is None for p in pairs)

    def test_expired_session_is_rejected(self, db_session, buyer):
        pair = token_service.issue_tokens(buyer)
        session = db_session.query(SessionToken).filter_by(token_hash=hash_token(pair.access_token)).one()
        session.expires_at = utcnow() - timedelta(seconds=1)
        db_session.commit()

        assert session_service.validate_session(pair.access_token) is None


class TestTokenCleanup:

    def test_removes_only_stale_rows(self, db_session, buyer):
        t1 = token_service.issue_tokens(buyer)
        t2 = token_service.rotate_refresh_token(t1.refresh_token)
        old = _record(db_session, t1.refresh_token)
        old.created_at = utcnow() - timedelta(days=60)
        db_session.query(SessionToken).filter_by(refresh_token_id=old.id).update(
            {SessionToken.created_at: utcnow() - timedelta(days=60)}, synchronize_session=False,
        )
        db_session.commit()

        result = maintenance_service.cleanup_tokens(retention_days=30)

        assert result["refresh_tokens_deleted"] == 1
        assert result["sessions_deleted"] == 0
        assert db_session.query(RefreshToken).filter_by(token_hash=hash_token(t1.refresh_token)).count() == 0
        assert session_service.validate_session(t2.access_token) is not None
