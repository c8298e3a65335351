"""Tests for ConnectionStore: creation, lifecycle, agent links, usage logs."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from agentvault.db.models import AuditRecord, Connection
from agentvault.errors import (
    ConnectionInUse,
    ConnectionNotUsable,
    DecryptionFailed,
    InvalidStatusTransition,
    NotFoundError,
    ProbeFailed,
    UnsupportedConnectionType,
    ValidationFailed,
)
from tests.fakes import OTHER_USER, TEST_USER, fields_for


async def _create(store, connection_type="github", name="Main", **kwargs):
    fields = kwargs.pop("fields", None) or fields_for(connection_type)
    return await store.create(TEST_USER, connection_type, name, fields, **kwargs)


class TestCreate:
    """Creating a connection validates, probes, then encrypts."""

    @pytest.mark.asyncio
    async def test_create_active_connection(self, store, tester):
        view = await _create(store)
        assert view.status == "active"
        assert view.scopes == ("read",)
        assert view.user_id == TEST_USER
        assert tester.calls == [("github", fields_for("github"))]

    @pytest.mark.asyncio
    async def test_credentials_encrypted_at_rest(self, store, session_factory):
        """The stored column never contains the plaintext token."""
        view = await _create(store)
        with session_factory() as db:
            row = db.get(Connection, view.id)
            assert fields_for("github")["token"] not in row.config

    @pytest.mark.asyncio
    async def test_view_never_carries_credentials(self, store):
        view = await _create(store, "aws", fields={**fields_for("aws"), "region": "us-east-1"})
        flat = str(view.to_dict())
        assert fields_for("aws")["secretAccessKey"] not in flat
        assert view.display == {"region": "us-east-1"}

    @pytest.mark.asyncio
    async def test_requested_scopes_sorted(self, store):
        view = await _create(store, scopes=["admin", "read"])
        assert view.scopes == ("read", "admin")

    @pytest.mark.asyncio
    async def test_validation_lists_all_errors(self, store, tester):
        """Bad fields and bad scopes fail together, before any probe."""
        with pytest.raises(ValidationFailed) as exc_info:
            await store.create(TEST_USER, "aws", "", {"accessKeyId": "bad"}, scopes=["root"])
        codes = {(e.field, e.code) for e in exc_info.value.errors}
        assert codes == {
            ("accessKeyId", "INVALID_FORMAT"),
            ("secretAccessKey", "MISSING_FIELD"),
            ("scopes", "UNSUPPORTED_SCOPE"),
            ("name", "MISSING_FIELD"),
        }
        assert tester.calls == []

    @pytest.mark.asyncio
    async def test_unknown_type(self, store):
        with pytest.raises(UnsupportedConnectionType):
            await store.create(TEST_USER, "dropbox", "x", {"token": "x"})

    @pytest.mark.asyncio
    async def test_probe_failure_writes_nothing(self, store, tester):
        tester.reject(fields_for("github")["token"])
        with pytest.raises(ProbeFailed) as exc_info:
            await _create(store)
        assert "rejected" in exc_info.value.detail
        assert store.list(TEST_USER) == []

    @pytest.mark.asyncio
    async def test_invalid_expiry(self, store):
        with pytest.raises(ValidationFailed) as exc_info:
            await _create(store, expires_at="next tuesday")
        assert exc_info.value.errors[0].field == "expires_at"

    @pytest.mark.asyncio
    async def test_creation_logged_with_ip(self, store):
        view = await store.create(
            TEST_USER, "github", "Main", fields_for("github"), ip_address="10.0.0.1"
        )
        logs = store.connection_logs(view.id, TEST_USER)
        assert [log["action"] for log in logs] == ["created"]
        assert logs[0]["ip_address"] == "10.0.0.1"


class TestReadAccess:
    @pytest.mark.asyncio
    async def test_other_user_cannot_read(self, store):
        view = await _create(store)
        with pytest.raises(NotFoundError):
            store.get(view.id, OTHER_USER)
        assert store.list(OTHER_USER) == []

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        await _create(store, "github")
        await _create(store, "openrouter", name="LLM")
        assert [v.type for v in store.list(TEST_USER)] == ["github", "openrouter"]
        assert [v.type for v in store.list(TEST_USER, connection_type="openrouter")] == ["openrouter"]
        assert store.list(TEST_USER, status="revoked") == []


class TestUpdate:
    @pytest.mark.asyncio
    async def test_rename(self, store):
        view = await _create(store)
        updated = await store.update(view.id, TEST_USER, name="Renamed")
        assert updated.name == "Renamed"

    @pytest.mark.asyncio
    async def test_new_credentials_reprobed(self, store, tester):
        view = await _create(store)
        new_token = "ghp_" + "z" * 36
        await store.update(view.id, TEST_USER, fields={"token": new_token})
        assert tester.calls[-1] == ("github", {"token": new_token})
        _, fields = store.open_credentials(view.id, TEST_USER)
        assert fields == {"token": new_token}

    @pytest.mark.asyncio
    async def test_rejected_credentials_mark_failed_and_keep_old(self, store, tester):
        view = await _create(store)
        bad = "ghp_" + "x" * 36
        tester.reject(bad)
        with pytest.raises(ProbeFailed):
            await store.update(view.id, TEST_USER, fields={"token": bad})
        assert store.get(view.id, TEST_USER).status == "failed"
        assert store.get(view.id, TEST_USER).last_error_code == "AUTH_FAILED"

    @pytest.mark.asyncio
    async def test_narrowing_scopes_below_link_rejected(self, store):
        view = await _create(store, scopes=["read", "write"])
        agent = store.register_agent(TEST_USER, "Agent")
        store.link_agent(agent.id, view.id, TEST_USER, permissions=["read", "write"])
        with pytest.raises(ValidationFailed) as exc_info:
            await store.update(view.id, TEST_USER, scopes=["read"])
        assert exc_info.value.errors[0].code == "SCOPE_IN_USE"

    @pytest.mark.asyncio
    async def test_revoked_cannot_be_updated(self, store):
        view = await _create(store)
        store.revoke(view.id, TEST_USER)
        with pytest.raises(ConnectionNotUsable):
            await store.update(view.id, TEST_USER, name="x")


class TestRetest:
    @pytest.mark.asyncio
    async def test_retest_failure_returns_outcome(self, store, tester):
        view = await _create(store)
        tester.reject(fields_for("github")["token"])
        outcome = await store.retest(view.id, TEST_USER)
        assert outcome.result.ok is False
        assert outcome.connection.status == "failed"

    @pytest.mark.asyncio
    async def test_retest_success_restores_active(self, store, tester):
        view = await _create(store)
        token = fields_for("github")["token"]
        tester.reject(token)
        await store.retest(view.id, TEST_USER)
        tester.rejected.clear()
        outcome = await store.retest(view.id, TEST_USER)
        assert outcome.connection.status == "active"
        assert outcome.connection.last_error_code is None

    @pytest.mark.asyncio
    async def test_retest_suspended_refused(self, store):
        view = await _create(store)
        store.suspend(view.id, "test")
        with pytest.raises(ConnectionNotUsable):
            await store.retest(view.id, TEST_USER)


class TestLifecycle:
    """Status transitions and who may make them."""

    @pytest.mark.asyncio
    async def test_revoke_is_terminal(self, store):
        view = await _create(store)
        revoked = store.revoke(view.id, TEST_USER, reason="rotated")
        assert revoked.status == "revoked"
        assert revoked.metadata["revocation_reason"] == "rotated"
        with pytest.raises(InvalidStatusTransition):
            store.suspend(view.id, "x")

    @pytest.mark.asyncio
    async def test_only_monitor_suspends(self, store):
        view = await _create(store)
        with pytest.raises(InvalidStatusTransition):
            store.set_status(view.id, "suspended", actor="owner", user_id=TEST_USER)

    @pytest.mark.asyncio
    async def test_suspend_is_idempotent(self, store):
        view = await _create(store)
        store.suspend(view.id, "first")
        again = store.suspend(view.id, "second")
        assert again.status == "suspended"
        assert again.metadata["suspension_reason"] == "first"

    @pytest.mark.asyncio
    async def test_reactivate_moves_to_testing(self, store):
        view = await _create(store)
        store.suspend(view.id, "x")
        assert store.reactivate(view.id, TEST_USER).status == "testing"

    @pytest.mark.asyncio
    async def test_reactivate_requires_suspended(self, store):
        view = await _create(store)
        with pytest.raises(InvalidStatusTransition):
            store.reactivate(view.id, TEST_USER)

    @pytest.mark.asyncio
    async def test_other_user_cannot_revoke(self, store):
        view = await _create(store)
        with pytest.raises(NotFoundError):
            store.revoke(view.id, OTHER_USER)

    @pytest.mark.asyncio
    async def test_soft_delete(self, store):
        view = await _create(store)
        agent = store.register_agent(TEST_USER, "Agent")
        store.link_agent(agent.id, view.id, TEST_USER)
        deleted = store.soft_delete(view.id, TEST_USER)
        assert deleted.status == "revoked"
        assert deleted.deleted_at is not None
        assert store.list(TEST_USER) == []
        assert len(store.list(TEST_USER, include_deleted=True)) == 1
        _, links = store.links_for_agent(agent.id, TEST_USER)
        assert links == []

    @pytest.mark.asyncio
    async def test_soft_delete_blocked_by_required_link(self, store):
        view = await _create(store)
        agent = store.register_agent(TEST_USER, "Agent")
        store.link_agent(agent.id, view.id, TEST_USER, is_required=True)
        with pytest.raises(ConnectionInUse) as exc_info:
            store.soft_delete(view.id, TEST_USER)
        assert exc_info.value.agent_ids == [agent.id]

    @pytest.mark.asyncio
    async def test_change_listener_notified(self, store):
        seen = []
        store.add_change_listener(lambda cid, uid: seen.append((cid, uid)))
        view = await _create(store)
        store.revoke(view.id, TEST_USER)
        assert seen == [(view.id, TEST_USER), (view.id, TEST_USER)]


class TestUsage:
    @pytest.mark.asyncio
    async def test_load_usable_rejects_inactive(self, store):
        view = await _create(store)
        store.revoke(view.id, TEST_USER)
        with pytest.raises(ConnectionNotUsable) as exc_info:
            store.load_usable(view.id, TEST_USER)
        assert exc_info.value.status == "revoked"

    @pytest.mark.asyncio
    async def test_load_usable_rejects_expired(self, store, session_factory):
        view = await _create(store)
        with session_factory() as db:
            row = db.get(Connection, view.id)
            row.expires_at = (datetime.now(UTC) - timedelta(minutes=1)).isoformat()
            db.commit()
        with pytest.raises(ConnectionNotUsable) as exc_info:
            store.load_usable(view.id, TEST_USER)
        assert exc_info.value.status == "expired"

    @pytest.mark.asyncio
    async def test_load_usable_wrong_user(self, store):
        view = await _create(store)
        with pytest.raises(ConnectionNotUsable) as exc_info:
            store.load_usable(view.id, OTHER_USER)
        assert exc_info.value.status == "missing"

    @pytest.mark.asyncio
    async def test_corrupt_blob_raises_and_audits(self, store, session_factory):
        view = await _create(store)
        with session_factory() as db:
            db.get(Connection, view.id).config = "AAAA" * 30
            db.commit()
        with pytest.raises(DecryptionFailed) as exc_info:
            store.open_credentials(view.id, TEST_USER)

        reference_id = exc_info.value.reference_id
        assert exc_info.value.to_dict() == {
            "code": "AV-2001",
            "message": f"Stored credentials could not be decrypted (reference {reference_id})",
            "reference_id": reference_id,
        }
        with session_factory() as db:
            record = db.scalars(select(AuditRecord).where(AuditRecord.reference_id == reference_id)).one()
        assert record.what == "decrypt"
        assert record.success is False

    @pytest.mark.asyncio
    async def test_mark_used_stamps_last_used(self, store):
        view = await _create(store)
        store.mark_used([view.id], TEST_USER, agent_id="agent-1", ip_address="10.0.0.2")
        assert store.get(view.id, TEST_USER).last_used is not None
        logs = store.connection_logs(view.id, TEST_USER)
        used = [log for log in logs if log["action"] == "used"]
        assert used[0]["agent_id"] == "agent-1"

    @pytest.mark.asyncio
    async def test_failed_use_does_not_stamp(self, store):
        view = await _create(store)
        store.mark_used([view.id], TEST_USER, success=False, error="boom")
        assert store.get(view.id, TEST_USER).last_used is None


class TestAgentLinks:
    @pytest.mark.asyncio
    async def test_link_defaults_to_connection_scopes(self, store):
        view = await _create(store, scopes=["read", "write"])
        agent = store.register_agent(TEST_USER, "Agent", {"research": True})
        link = store.link_agent(agent.id, view.id, TEST_USER)
        assert link.permissions == ("read", "write")
        assert link.is_required is False

    @pytest.mark.asyncio
    async def test_link_cannot_exceed_scopes(self, store):
        view = await _create(store)
        agent = store.register_agent(TEST_USER, "Agent")
        with pytest.raises(ValidationFailed) as exc_info:
            store.link_agent(agent.id, view.id, TEST_USER, permissions=["write"])
        assert exc_info.value.errors[0].code == "EXCEEDS_SCOPES"

    @pytest.mark.asyncio
    async def test_link_replaces_existing(self, store):
        view = await _create(store, scopes=["read", "write"])
        agent = store.register_agent(TEST_USER, "Agent")
        store.link_agent(agent.id, view.id, TEST_USER, permissions=["read"])
        store.link_agent(agent.id, view.id, TEST_USER, permissions=["write"], is_required=True)
        _, links = store.links_for_agent(agent.id, TEST_USER)
        assert len(links) == 1
        assert links[0].permissions == ("write",)
        assert links[0].is_required is True
        assert links[0].connection.id == view.id

    @pytest.mark.asyncio
    async def test_link_requires_active(self, store):
        view = await _create(store)
        agent = store.register_agent(TEST_USER, "Agent")
        store.revoke(view.id, TEST_USER)
        with pytest.raises(ConnectionNotUsable):
            store.link_agent(agent.id, view.id, TEST_USER)

    @pytest.mark.asyncio
    async def test_cross_user_link_refused(self, store):
        view = await _create(store)
        agent = store.register_agent(OTHER_USER, "Agent")
        with pytest.raises(NotFoundError):
            store.link_agent(agent.id, view.id, OTHER_USER)

    @pytest.mark.asyncio
    async def test_unlink(self, store):
        view = await _create(store)
        agent = store.register_agent(TEST_USER, "Agent")
        store.link_agent(agent.id, view.id, TEST_USER)
        store.unlink_agent(agent.id, view.id, TEST_USER)
        with pytest.raises(NotFoundError):
            store.unlink_agent(agent.id, view.id, TEST_USER)

    def test_agent_name_required(self, store):
        with pytest.raises(ValidationFailed):
            store.register_agent(TEST_USER, "  ")
