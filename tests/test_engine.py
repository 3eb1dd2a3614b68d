"""
Tests for the flow engine.

Covers:
  - Flow registry and channel assignments (draft deactivation)
  - End-to-end inbound handling: enter, pause, resume, hard reset
  - Sticky sessions taking precedence across flows
  - Degraded contact lookups and fail-closed store errors
"""
import httpx
import pytest

from backend.contacts import ContactLookupError, InMemoryContactDirectory, RestContactDirectory
from config.settings import ContactsConfig, Settings
from core.engine import FlowEngine, FlowNotActive, UnknownAssignment, UnknownFlow
from database.store_base import SessionStoreError
from database.store_memory import InMemorySessionStore
from models.schemas import Edge, FlowStatus, Node, NodeType


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def engine(store, contact, clock):
    return FlowEngine(
        store=store,
        contacts=InMemoryContactDirectory([contact]),
        settings=Settings(),
        clock=clock,
    )


class FailingDirectory(InMemoryContactDirectory):
    async def get_contact(self, contact_id):
        raise ContactLookupError("crm down")


class BrokenStore(InMemorySessionStore):
    async def get(self, contact_id, flow_id):
        raise SessionStoreError("connection refused")


def texts(result):
    return [a.text for a in result.actions]


# ──────────────────────────────────────────────────────────────
#  Registry & assignments
# ──────────────────────────────────────────────────────────────

class TestRegistry:
    def test_register_keeps_a_copy(self, engine, support_flow):
        engine.register_flow(support_flow)
        support_flow.name = "Edited elsewhere"
        assert engine.get_flow("flow_support").name == "Support"
        assert [f.id for f in engine.list_flows()] == ["flow_support"]

    def test_unknown_flow(self, engine):
        with pytest.raises(UnknownFlow):
            engine.get_flow("nope")
        with pytest.raises(KeyError):
            engine.set_flow_status("nope", "active")

    def test_remove_flow_drops_assignments(self, engine, support_flow):
        engine.register_flow(support_flow)
        engine.assign("flow_support", "wa-1")
        assert engine.remove_flow("flow_support") is True
        assert engine.assignments() == []
        assert engine.remove_flow("flow_support") is False


class TestAssignments:
    def test_new_assignment_is_inactive(self, engine, support_flow):
        engine.register_flow(support_flow)
        assignment = engine.assign("flow_support", "wa-1", "whatsapp_unofficial")
        assert assignment.is_active is False

    def test_cannot_activate_for_draft_flow(self, engine, flow_factory):
        engine.register_flow(flow_factory(status=FlowStatus.DRAFT))
        assignment = engine.assign("flow_support", "wa-1")
        with pytest.raises(FlowNotActive):
            engine.set_assignment_active(assignment.id, True)

    def test_unknown_assignment(self, engine):
        with pytest.raises(UnknownAssignment):
            engine.set_assignment_active("assign_missing", True)

    def test_draft_deactivates_and_reactivation_does_not_restore(self, engine, support_flow):
        engine.register_flow(support_flow)
        assignment = engine.assign("flow_support", "wa-1")
        engine.set_assignment_active(assignment.id, True)

        engine.set_flow_status("flow_support", FlowStatus.DRAFT)
        assert engine.assignments("flow_support")[0].is_active is False

        engine.set_flow_status("flow_support", "active")
        assert engine.assignments("flow_support")[0].is_active is False


# ──────────────────────────────────────────────────────────────
#  Inbound handling
# ──────────────────────────────────────────────────────────────

class TestInbound:
    @pytest.mark.asyncio
    async def test_enter_pause_resume(self, engine, store, support_flow, make_message):
        engine.register_flow(support_flow)

        first = await engine.handle_inbound(make_message("hello"))
        assert first.kind == "entered"
        assert texts(first) == ["Hi Ana!", "How can we help?"]
        assert (await store.get("c_ana", "flow_support")).current_node_id == "menu"

        second = await engine.handle_inbound(make_message("1"))
        assert second.kind == "resumed"
        assert texts(second) == ["Sales here"]
        assert (await store.get("c_ana", "flow_support")).current_node_id is None

    @pytest.mark.asyncio
    async def test_resumed_without_pause_restarts_from_trigger(self, engine, support_flow, make_message):
        support_flow.edges = [e for e in support_flow.edges if e.id == "e1"]
        engine.register_flow(support_flow)
        await engine.handle_inbound(make_message("hello"))
        result = await engine.handle_inbound(make_message("anything"))
        assert result.kind == "resumed"
        assert texts(result) == ["Hi Ana!"]

    @pytest.mark.asyncio
    async def test_captured_input_survives_later_pauses(self, engine, store, flow_factory, make_message):
        flow = flow_factory()
        flow.nodes = [
            flow.nodes[0],
            Node(id="ask", type=NodeType.INPUT, data={"message": "Your name?", "variableName": "name"}),
            Node(id="menu", type=NodeType.QUICK_REPLY,
                 data={"message": "Done, {{name}}?", "options": [{"text": "Yes"}]}),
            Node(id="bye", type=NodeType.MESSAGE, data={"message": "Bye {{name}}"}),
        ]
        flow.edges = [
            Edge(id="e1", source="trigger", target="ask"),
            Edge(id="e2", source="ask", target="menu"),
            Edge(id="e3", source="menu", source_handle="option-1", target="bye"),
        ]
        engine.register_flow(flow)

        assert texts(await engine.handle_inbound(make_message("hello"))) == ["Your name?"]
        assert texts(await engine.handle_inbound(make_message("Bea"))) == ["Done, Bea?"]
        assert (await store.get("c_ana", "flow_support")).variables == {"name": "Bea"}

        last = await engine.handle_inbound(make_message("1"))
        assert texts(last) == ["Bye Bea"]
        assert last.diagnostics == []

    @pytest.mark.asyncio
    async def test_no_active_flow(self, engine, flow_factory, make_message):
        engine.register_flow(flow_factory(status=FlowStatus.DRAFT))
        result = await engine.handle_inbound(make_message("hello"))
        assert result.kind == "no_match"
        assert result.actions == []
        assert not result.matched

    @pytest.mark.asyncio
    async def test_expired_session_reevaluated(self, engine, support_flow, make_message, clock):
        engine.register_flow(support_flow)
        await engine.handle_inbound(make_message("hello"))
        clock.advance(minutes=31)
        result = await engine.handle_inbound(make_message("1"))
        assert result.kind == "no_match"

    @pytest.mark.asyncio
    async def test_hard_reset(self, engine, store, support_flow, make_message):
        engine.register_flow(support_flow)
        await engine.handle_inbound(make_message("hello"))
        result = await engine.handle_inbound(make_message("Restart"))
        assert result.kind == "hard_reset"
        assert texts(result) == ["Session reset, Ana."]
        assert result.actions[0].node_id == "trigger"
        assert await store.get("c_ana", "flow_support") is None

    @pytest.mark.asyncio
    async def test_bot_reset_node_ends_session(self, engine, store, flow_factory, make_message):
        flow = flow_factory()
        flow.nodes.append(Node(id="reset", type=NodeType.BOT_RESET, data={"message": "Bye"}))
        flow.edges = [Edge(id="e1", source="trigger", target="reset")]
        engine.register_flow(flow)
        result = await engine.handle_inbound(make_message("hello"))
        assert texts(result) == ["Bye"]
        assert await store.get("c_ana", "flow_support") is None

    @pytest.mark.asyncio
    async def test_without_persistence_every_message_is_evaluated(self, engine, store, flow_factory, make_message):
        engine.register_flow(flow_factory(enableSessionPersistence=False))
        assert (await engine.handle_inbound(make_message("hello"))).kind == "entered"
        assert (await engine.handle_inbound(make_message("1"))).kind == "no_match"
        assert store.count == 0


class TestChannelAssignments:
    @pytest.mark.asyncio
    async def test_channel_id_requires_active_assignment(self, engine, support_flow, make_message):
        engine.register_flow(support_flow)
        message = make_message("hello", channel_id="wa-1")
        assert (await engine.handle_inbound(message)).kind == "no_match"

        assignment = engine.assign("flow_support", "wa-1")
        engine.set_assignment_active(assignment.id, True)
        assert (await engine.handle_inbound(message)).kind == "entered"

    @pytest.mark.asyncio
    async def test_other_channel_connection_not_routed(self, engine, support_flow, make_message):
        engine.register_flow(support_flow)
        assignment = engine.assign("flow_support", "wa-1")
        engine.set_assignment_active(assignment.id, True)
        result = await engine.handle_inbound(make_message("hello", channel_id="wa-2"))
        assert result.kind == "no_match"


class TestMultipleFlows:
    @pytest.mark.asyncio
    async def test_live_session_beats_registration_order(self, engine, flow_factory, make_message):
        support = flow_factory()
        catchall = flow_factory(conditionType="any")
        catchall.id = "flow_catchall"
        engine.register_flow(support)
        engine.register_flow(catchall)

        first = await engine.handle_inbound(make_message("hi"))
        assert first.flow_id == "flow_catchall"

        second = await engine.handle_inbound(make_message("hello"))
        assert second.flow_id == "flow_catchall"
        assert second.kind == "resumed"

    @pytest.mark.asyncio
    async def test_first_matching_flow_wins(self, engine, flow_factory, make_message):
        support = flow_factory()
        catchall = flow_factory(conditionType="any")
        catchall.id = "flow_catchall"
        engine.register_flow(support)
        engine.register_flow(catchall)
        result = await engine.handle_inbound(make_message("hello"))
        assert result.flow_id == "flow_support"


class TestFailures:
    @pytest.mark.asyncio
    async def test_contact_lookup_failure_degrades(self, store, clock, support_flow, make_message):
        engine = FlowEngine(store=store, contacts=FailingDirectory(), settings=Settings(), clock=clock)
        engine.register_flow(support_flow)
        result = await engine.handle_inbound(make_message("hello"))
        assert result.kind == "entered"
        assert texts(result)[0] == "Hi !"

    @pytest.mark.asyncio
    async def test_malformed_contact_payload_degrades(self, store, clock, support_flow, make_message):
        client = httpx.AsyncClient(
            base_url="https://crm.example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["not", "a", "contact"])),
        )
        contacts = RestContactDirectory(ContactsConfig(backend="rest", base_url="https://crm.example.com"), client=client)
        engine = FlowEngine(store=store, contacts=contacts, settings=Settings(), clock=clock)
        engine.register_flow(support_flow)
        result = await engine.handle_inbound(make_message("hello"))
        assert result.kind == "entered"
        assert texts(result)[0] == "Hi !"

    @pytest.mark.asyncio
    async def test_store_error_fails_closed(self, clock, contact, support_flow, make_message):
        engine = FlowEngine(store=BrokenStore(), contacts=InMemoryContactDirectory([contact]),
                            settings=Settings(), clock=clock)
        engine.register_flow(support_flow)
        result = await engine.handle_inbound(make_message("hello"))
        assert result.kind == "error"
        assert result.actions == []

    @pytest.mark.asyncio
    async def test_sweep_sessions(self, engine, support_flow, make_message, clock):
        engine.register_flow(support_flow)
        await engine.handle_inbound(make_message("hello"))
        clock.advance(hours=1)
        assert await engine.sweep_sessions() == 1
        await engine.close()
