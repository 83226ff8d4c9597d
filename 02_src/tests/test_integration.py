"""Integration tests for the input -> decision -> action flow."""

import os
import tempfile

import pytest
import pytest_asyncio

from opsflow.app import Application
from opsflow.config import RuntimeConfig
from opsflow.models import Action, ActionType, Decision, DecisionState


def runtime_config(**inputs) -> RuntimeConfig:
    config = RuntimeConfig()
    config.notifications.operator_recipients = ["ops@example.com"]
    for key, value in inputs.items():
        setattr(config.inputs, key, value)
    return config


@pytest_asyncio.fixture
async def db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    os.unlink(path)


@pytest_asyncio.fixture
async def app(db_path, mock_decision_provider, mock_delivery):
    """Create and start a test application on a file database."""
    application = Application(
        db_path=db_path,
        config=runtime_config(skip_auto_replies=True),
        decision_provider=mock_decision_provider,
        delivery=mock_delivery,
    )
    await application.start()
    yield application
    await application.stop()


@pytest.mark.asyncio
async def test_webhook_to_notification(app, mock_decision_provider, mock_delivery):
    """Test that a form submission ends with a delivered notification."""
    mock_decision_provider.decide.return_value = Decision(
        intent="confirm_receipt",
        confidence=0.93,
        actions=[
            Action(
                type=ActionType.SEND_NOTIFICATION,
                params={"to": "ana@client.com", "subject": "We got it", "message": "Thanks"},
            )
        ],
    )

    result = await app.get_adapter("webhook").handle_input(
        {
            "source": "contact_form",
            "data": {"name": "Ana Diaz", "email": "ana@client.com", "message": "Leaking tap"},
        }
    )

    assert result.success is True
    agent_input, _context = mock_decision_provider.decide.call_args.args
    assert agent_input.correlation_id == result.correlation_id

    record = app.agent.get_history()[0]
    assert record.correlation_id == result.correlation_id
    assert record.state == DecisionState.EXECUTED
    assert record.outcomes[0].success is True
    mock_delivery.send_email.assert_awaited_once()

    events = await app.storage.get_bus_events(correlation_id=result.correlation_id)
    types = {e.type for e in events}
    assert "webhook:form_submitted" in types
    assert "agent:decision_made" in types


@pytest.mark.asyncio
async def test_low_confidence_escalates_to_operators(app, mock_decision_provider, mock_delivery):
    """Test that a low-confidence decision notifies operators and runs nothing."""
    mock_decision_provider.decide.return_value = Decision(
        intent="unclear",
        confidence=0.2,
        urgency=5,
        actions=[Action(type=ActionType.CANCEL_EVENT, params={"event_id": "evt-1"})],
    )

    await app.get_adapter("webhook").handle_input(
        {"source": "intake_form", "data": {"type": "repair", "email": "a@example.com"}}
    )

    record = app.agent.get_history()[0]
    assert record.state == DecisionState.ESCALATED
    assert record.outcomes == []
    assert mock_delivery.send_email.await_count == 1


@pytest.mark.asyncio
async def test_auto_reply_skipped(app, mock_decision_provider):
    """Test that a skipped auto-reply succeeds without reaching the agent."""
    result = await app.get_adapter("email").handle_input(
        {
            "from": "ana@client.com",
            "to": "ops@example.com",
            "subject": "Out of Office: back Monday",
            "text": "I am away",
        }
    )

    assert result.success is True
    assert result.skipped is True
    assert result.event_emitted is False
    mock_decision_provider.decide.assert_not_awaited()
    assert await app.storage.get_bus_events() == []


@pytest.mark.asyncio
async def test_pending_approval_survives_until_approved(app, mock_decision_provider, mock_delivery):
    """Test that a held decision only runs once an operator approves it."""
    mock_decision_provider.decide.return_value = Decision(
        intent="bulk_update",
        confidence=0.95,
        actions=[
            Action(
                type=ActionType.BULK_NOTIFICATION,
                params={"recipients": ["a@x.com", "b@x.com"], "subject": "News", "body": "Hi"},
            )
        ],
    )

    await app.get_adapter("webhook").handle_input(
        {"source": "intake_form", "data": {"type": "repair", "email": "a@example.com"}}
    )

    pending = app.agent.get_pending_decisions()
    assert len(pending) == 1
    mock_delivery.send_email.assert_not_awaited()

    record = await app.agent.approve_decision(pending[0].id, approved_by="alice")

    assert record.state == DecisionState.EXECUTED
    assert mock_delivery.send_email.await_count == 2


@pytest.mark.asyncio
async def test_reset(app):
    """Test reset functionality."""
    await app.get_adapter("webhook").handle_input(
        {"source": "intake_form", "data": {"type": "repair", "email": "a@example.com"}}
    )
    assert await app.storage.get_trace_events(limit=10)

    await app.reset()

    assert await app.storage.get_trace_events(limit=10) == []
    assert await app.storage.get_bus_events() == []
