"""End-to-end scenarios through ConnectionBroker with fake probes and adapters."""

import pytest
from sqlalchemy.exc import OperationalError

from agentvault.errors import (
    ConnectionNotUsable,
    MissingRequiredConnection,
    NoUsableConnection,
    ProbeFailed,
    RateLimited,
)
from agentvault.services.security_monitor import (
    CONNECTION_CREATED,
    CONNECTION_CREDENTIAL_CHANGED,
    CONNECTION_TEST_FAILED,
    MASS_CONNECTION_CREATION,
    REPEATED_FAILED_TESTS,
)
from tests.fakes import TEST_USER, fields_for


def _event_types(broker):
    return [e.event_type for e in broker.monitor.events(TEST_USER)]


class TestCreateFlow:
    @pytest.mark.asyncio
    async def test_create_observes_event(self, broker):
        view = await broker.create_connection(
            TEST_USER, "github", "Main", fields_for("github"), ip_address="10.0.0.1"
        )
        assert view.status == "active"
        assert _event_types(broker) == [CONNECTION_CREATED]

    @pytest.mark.asyncio
    async def test_probe_failure_observed_and_raised(self, broker, tester):
        tester.reject(fields_for("github")["token"])
        with pytest.raises(ProbeFailed):
            await broker.create_connection(TEST_USER, "github", "Main", fields_for("github"))
        assert _event_types(broker) == [CONNECTION_TEST_FAILED]
        assert broker.store.list(TEST_USER) == []

    @pytest.mark.asyncio
    async def test_mass_creation_rate_limits_next_create(self, broker):
        for i in range(5):
            await broker.create_connection(TEST_USER, "openrouter", f"LLM {i}", fields_for("openrouter"))
        alerts = broker.monitor.alerts(TEST_USER)
        assert [a.alert_type for a in alerts] == [MASS_CONNECTION_CREATION]

        with pytest.raises(RateLimited):
            await broker.create_connection(TEST_USER, "openrouter", "LLM 6", fields_for("openrouter"))
        assert len(broker.store.list(TEST_USER)) == 5

    @pytest.mark.asyncio
    async def test_event_storage_failure_keeps_connection(self, broker, monkeypatch, caplog):
        def broken_observe(*args, **kwargs):
            raise OperationalError("INSERT INTO security_events", {}, Exception("disk I/O error"))

        monkeypatch.setattr(broker.monitor, "observe", broken_observe)
        view = await broker.create_connection(TEST_USER, "github", "Main", fields_for("github"))

        assert broker.store.get(view.id, TEST_USER).status == "active"
        assert "Failed to record security event connection_created" in caplog.text


class TestSuspensionScenario:
    """Repeated failed tests suspend; reactivation re-probes."""

    @pytest.mark.asyncio
    async def test_three_failed_tests_suspend_connection(self, broker, tester):
        view = await broker.create_connection(TEST_USER, "github", "Main", fields_for("github"))
        tester.reject(fields_for("github")["token"])

        for _ in range(2):
            outcome = await broker.test_connection(view.id, TEST_USER)
            assert outcome.result.ok is False
        assert broker.store.get(view.id, TEST_USER).status == "failed"

        await broker.test_connection(view.id, TEST_USER)

        assert broker.store.get(view.id, TEST_USER).status == "suspended"
        assert [a.alert_type for a in broker.monitor.alerts(TEST_USER)] == [REPEATED_FAILED_TESTS]

        with pytest.raises(ConnectionNotUsable):
            await broker.test_connection(view.id, TEST_USER)

    @pytest.mark.asyncio
    async def test_reactivation_reprobes(self, broker, tester):
        view = await broker.create_connection(TEST_USER, "github", "Main", fields_for("github"))
        broker.store.suspend(view.id, "manual")

        outcome = await broker.reactivate_connection(view.id, TEST_USER)
        assert outcome.result.ok is True
        assert outcome.connection.status == "active"

        broker.store.suspend(view.id, "manual")
        tester.reject(fields_for("github")["token"])
        outcome = await broker.reactivate_connection(view.id, TEST_USER)
        assert outcome.connection.status == "failed"

    @pytest.mark.asyncio
    async def test_failures_after_reactivation_suspend_again(self, broker, tester):
        view = await broker.create_connection(TEST_USER, "github", "Main", fields_for("github"))
        tester.reject(fields_for("github")["token"])
        for _ in range(3):
            await broker.test_connection(view.id, TEST_USER)
        assert broker.store.get(view.id, TEST_USER).status == "suspended"

        outcome = await broker.reactivate_connection(view.id, TEST_USER)
        assert outcome.connection.status == "failed"
        for _ in range(2):
            await broker.test_connection(view.id, TEST_USER)

        assert broker.store.get(view.id, TEST_USER).status == "suspended"
        assert [a.alert_type for a in broker.monitor.alerts(TEST_USER)] == [
            REPEATED_FAILED_TESTS, REPEATED_FAILED_TESTS,
        ]

    @pytest.mark.asyncio
    async def test_rejected_candidate_keys_suspend_and_block_execution(self, broker, tester):
        """Three rejected candidate tokens in an hour suspend the connection; routing then fails."""
        view = await broker.create_connection(TEST_USER, "github", "Main", fields_for("github"))
        agent = broker.store.register_agent(TEST_USER, "Deployer", {"infrastructureAutomation": True})
        arcade = await broker.create_connection(TEST_USER, "arcade", "Infra", fields_for("arcade"))
        broker.store.link_agent(agent.id, arcade.id, TEST_USER)
        broker.store.link_agent(agent.id, view.id, TEST_USER, is_required=True)
        candidates = ["ghp_" + letter * 36 for letter in "xyz"]
        tester.reject(*candidates)

        for candidate in candidates[:2]:
            outcome = await broker.test_connection(view.id, TEST_USER, fields={"token": candidate})
            assert outcome.result.ok is False
            assert outcome.connection.status == "failed"
        assert broker.monitor.alerts(TEST_USER) == []

        await broker.test_connection(view.id, TEST_USER, fields={"token": candidates[2]})

        assert broker.store.get(view.id, TEST_USER).status == "suspended"
        assert [a.alert_type for a in broker.monitor.alerts(TEST_USER)] == [REPEATED_FAILED_TESTS]
        with pytest.raises(MissingRequiredConnection) as exc_info:
            await broker.execute(agent.id, TEST_USER, "Deploy the stack")
        assert [m.reason for m in exc_info.value.missing] == ["suspended"]


class TestUpdateFlow:
    @pytest.mark.asyncio
    async def test_credential_change_observed(self, broker):
        view = await broker.create_connection(TEST_USER, "openrouter", "LLM", fields_for("openrouter"))
        await broker.update_connection(view.id, TEST_USER, fields={"apiKey": "sk-or-" + "q" * 24})
        assert _event_types(broker)[0] == CONNECTION_CREDENTIAL_CHANGED

    @pytest.mark.asyncio
    async def test_rename_not_observed(self, broker):
        view = await broker.create_connection(TEST_USER, "openrouter", "LLM", fields_for("openrouter"))
        await broker.update_connection(view.id, TEST_USER, name="Renamed")
        assert _event_types(broker) == [CONNECTION_CREATED]


class TestExecuteFlow:
    @pytest.mark.asyncio
    async def test_execute_after_revoke_refused(self, broker):
        view = await broker.create_connection(TEST_USER, "openrouter", "LLM", fields_for("openrouter"))
        agent = broker.store.register_agent(TEST_USER, "Helper")
        broker.store.link_agent(agent.id, view.id, TEST_USER, is_required=True)

        result = await broker.execute(agent.id, TEST_USER, "Hello")
        assert result.success

        broker.revoke_connection(view.id, TEST_USER, "rotated")

        with pytest.raises(MissingRequiredConnection):
            await broker.execute(agent.id, TEST_USER, "Hello again")
        with pytest.raises(ConnectionNotUsable) as exc_info:
            await broker.execute(agent.id, TEST_USER, "And again")
        assert exc_info.value.connection_id == view.id
        assert exc_info.value.status == "revoked"

    @pytest.mark.asyncio
    async def test_execute_after_revoking_optional_link_refused(self, broker):
        view = await broker.create_connection(TEST_USER, "openrouter", "LLM", fields_for("openrouter"))
        agent = broker.store.register_agent(TEST_USER, "Helper")
        broker.store.link_agent(agent.id, view.id, TEST_USER)
        broker.revoke_connection(view.id, TEST_USER)

        with pytest.raises(ConnectionNotUsable) as exc_info:
            await broker.execute(agent.id, TEST_USER, "Hello")
        assert isinstance(exc_info.value, NoUsableConnection)
        assert exc_info.value.rejected[0]["reason"] == "revoked"
        assert exc_info.value.reference_id

    @pytest.mark.asyncio
    async def test_sweep_reports_cache(self, broker):
        result = broker.sweep()
        assert result["cache_entries"] == 0
        assert "security_events" in result
