"""Shared test fixtures for the flow engine."""
from datetime import datetime, timedelta, timezone

import pytest
import structlog

from config.settings import reset_settings
from database.store_factory import reset_store
from models.schemas import (
    ContactInfo, Edge, Flow, FlowStatus, InboundMessage, Node, NodeType, Position,
)

START = datetime(2024, 5, 6, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; call it to read, advance() to move forward."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _fresh_singletons():
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def contact() -> ContactInfo:
    return ContactInfo(
        id="c_ana",
        name="Ana",
        phone="+15550100",
        email="ana@example.com",
        tags=["vip", "newsletter"],
        attributes={"plan": "gold", "city": "Lisbon"},
    )


@pytest.fixture
def make_message(clock):
    def _make(text: str = "", channel: str = "webchat", contact_id: str = "c_ana", **kwargs) -> InboundMessage:
        return InboundMessage(
            contact_id=contact_id,
            channel_type=channel,
            text=text,
            timestamp=kwargs.pop("timestamp", clock()),
            **kwargs,
        )
    return _make


def build_flow(status: FlowStatus = FlowStatus.ACTIVE, **trigger_data) -> Flow:
    """
    trigger ──▶ greet ──▶ menu (quick reply)
                            ├─option-1─▶ sales
                            └─option-2─▶ support
    """
    data = {
        "channelTypes": ["webchat"],
        "conditionType": "contains",
        "conditionValue": "hello",
        "hardResetKeyword": "restart",
        "hardResetConfirmationMessage": "Session reset, {{contact.name}}.",
        "enableSessionPersistence": True,
        "sessionTimeout": 30,
        "sessionTimeoutUnit": "minutes",
    }
    data.update(trigger_data)
    return Flow(
        id="flow_support",
        name="Support",
        status=status,
        nodes=[
            Node(id="trigger", type=NodeType.TRIGGER, position=Position(x=0, y=0), data=data),
            Node(id="greet", type=NodeType.MESSAGE, data={"message": "Hi {{contact.name}}!"}),
            Node(id="menu", type=NodeType.QUICK_REPLY,
                 data={"message": "How can we help?", "options": [{"text": "Sales"}, {"text": "Support"}]}),
            Node(id="sales", type=NodeType.MESSAGE, data={"message": "Sales here"}),
            Node(id="support", type=NodeType.MESSAGE, data={"message": "Support here"}),
        ],
        edges=[
            Edge(id="e1", source="trigger", target="greet"),
            Edge(id="e2", source="greet", target="menu"),
            Edge(id="e3", source="menu", source_handle="option-1", target="sales"),
            Edge(id="e4", source="menu", source_handle="option-2", target="support"),
        ],
    )


@pytest.fixture
def support_flow() -> Flow:
    return build_flow()


@pytest.fixture
def flow_factory():
    return build_flow
