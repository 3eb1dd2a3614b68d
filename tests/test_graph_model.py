"""Tests for FlowGraph structural edits and invariants."""
import pytest

from graph.flow_graph import (
    DUPLICATE_OFFSET, FlowGraph, SingletonViolation, UnknownHandle,
    UnknownKeyword, UnknownNode,
)
from models.schemas import Flow, NodeType, Position


@pytest.fixture
def graph():
    return FlowGraph(Flow(id="flow_g"), singleton_types=["typebot", "flowise"])


class TestNodes:
    def test_add_node_returns_new_id(self, graph):
        node_id = graph.add_node("message", {"x": 10, "y": 20}, {"message": "hi"})
        node = graph.get_node(node_id)
        assert node.type == NodeType.MESSAGE
        assert node.position == Position(x=10, y=20)
        assert node.data == {"message": "hi"}

    def test_add_node_accepts_legacy_type_name(self, graph):
        node_id = graph.add_node("messageNode")
        assert graph.get_node(node_id).type == NodeType.MESSAGE

    def test_add_unknown_type_raises(self, graph):
        with pytest.raises(ValueError):
            graph.add_node("teleporter")

    def test_singleton_enforced_on_add(self, graph):
        graph.add_node("typebot")
        with pytest.raises(SingletonViolation):
            graph.add_node("typebot")
        assert len(graph.nodes_of_type("typebot")) == 1

    def test_non_singleton_types_repeat(self, graph):
        graph.add_node("trigger")
        graph.add_node("trigger")
        assert len(graph.nodes_of_type(NodeType.TRIGGER)) == 2

    def test_singleton_enforced_on_duplicate(self, graph):
        node_id = graph.add_node("flowise")
        with pytest.raises(SingletonViolation):
            graph.duplicate_node(node_id)
        assert len(graph.nodes) == 1

    def test_duplicate_offsets_and_selects_clone(self, graph):
        a = graph.add_node("message", (100, 100), {"message": "hi"})
        b = graph.add_node("message", (0, 0))
        graph.get_node(b).selected = True

        clone_id = graph.duplicate_node(a)
        clone = graph.get_node(clone_id)
        assert clone_id not in (a, b)
        assert clone.position == Position(x=100 + DUPLICATE_OFFSET, y=100 + DUPLICATE_OFFSET)
        assert clone.data == {"message": "hi"}
        assert clone.selected is True
        assert not graph.get_node(a).selected
        assert not graph.get_node(b).selected

    def test_duplicate_data_is_independent(self, graph):
        a = graph.add_node("quickreply", data={"options": [{"text": "One"}]})
        clone_id = graph.duplicate_node(a)
        graph.get_node(clone_id).data["options"].append({"text": "Two"})
        assert len(graph.get_node(a).data["options"]) == 1

    def test_duplicate_unknown_raises(self, graph):
        with pytest.raises(UnknownNode):
            graph.duplicate_node("nope")

    def test_remove_node_cascades_edges(self, graph):
        a = graph.add_node("trigger")
        b = graph.add_node("message")
        c = graph.add_node("message")
        graph.connect(a, None, b)
        graph.connect(b, None, c)
        graph.connect(a, None, c)

        graph.remove_node(b)
        assert graph.get_node(b) is None
        assert all(b not in (e.source, e.target) for e in graph.edges)
        assert len(graph.edges) == 1

    def test_remove_missing_node_is_noop(self, graph):
        graph.add_node("message")
        graph.remove_node("ghost")
        assert len(graph.nodes) == 1

    def test_no_edge_references_removed_nodes(self, graph):
        ids = [graph.add_node("message") for _ in range(5)]
        for i in range(4):
            graph.connect(ids[i], None, ids[i + 1])
        graph.connect(ids[0], None, ids[4])
        for node_id in (ids[1], ids[4], ids[1]):
            graph.remove_node(node_id)
        live = {n.id for n in graph.nodes}
        assert all(e.source in live and e.target in live for e in graph.edges)

    def test_set_positions_returns_previous(self, graph):
        a = graph.add_node("message", (1, 2))
        previous = graph.set_positions({a: Position(x=50, y=60)})
        assert previous == {a: Position(x=1, y=2)}
        assert graph.get_node(a).position == Position(x=50, y=60)


class TestEdges:
    def test_connect_unknown_endpoint_raises_without_mutation(self, graph):
        a = graph.add_node("message")
        with pytest.raises(UnknownNode):
            graph.connect(a, None, "ghost")
        with pytest.raises(UnknownNode):
            graph.connect("ghost", None, a)
        assert graph.edges == []

    def test_new_edges_use_editor_defaults(self, graph):
        a, b = graph.add_node("message"), graph.add_node("message")
        graph.connect(a, None, b)
        edge = graph.edges[0]
        assert edge.animated is True
        assert edge.type == "smoothstep"

    def test_fan_out_allowed(self, graph):
        a, b, c = (graph.add_node("message") for _ in range(3))
        graph.connect(a, None, b)
        graph.connect(a, None, c)
        assert len(graph.outgoing(a)) == 2

    def test_condition_handle_replaces_previous_edge(self, graph):
        cond = graph.add_node("condition", data={"condition": "Contains('x')"})
        b, c = graph.add_node("message"), graph.add_node("message")
        graph.connect(cond, "yes", b)
        graph.connect(cond, "yes", c)
        yes_edges = graph.outgoing(cond, "yes")
        assert len(yes_edges) == 1
        assert yes_edges[0].target == c

    def test_condition_yes_and_no_coexist(self, graph):
        cond = graph.add_node("condition")
        b, c = graph.add_node("message"), graph.add_node("message")
        graph.connect(cond, "yes", b)
        graph.connect(cond, "no", c)
        assert len(graph.outgoing(cond)) == 2

    def test_connect_stale_keyword_handle_rejected(self, graph):
        node = graph.add_node("message", data={"keywords": [{"value": "help"}]})
        target = graph.add_node("message")
        graph.connect(node, "keyword-help", target)
        with pytest.raises(UnknownHandle):
            graph.connect(node, "keyword-pricing", target)

    def test_disconnect(self, graph):
        a, b = graph.add_node("message"), graph.add_node("message")
        edge_id = graph.connect(a, None, b)
        graph.disconnect(edge_id)
        assert graph.edges == []


class TestKeywords:
    @pytest.fixture
    def router(self, graph):
        node = graph.add_node("message", data={"message": "Pick one", "enableKeywordTriggers": True})
        return node

    def test_handle_id_derived_from_value(self, graph, router):
        keyword = graph.add_keyword(router, "Talk To Agent")
        assert keyword.handle_id == "keyword-talk-to-agent"

    def test_handles_keep_keyword_order(self, graph, router):
        graph.add_keyword(router, "sales")
        graph.add_keyword(router, "billing")
        assert graph.handles_for(router) == ["keyword-sales", "keyword-billing", "no-match"]

    def test_label_edit_keeps_handle_and_edges(self, graph, router):
        keyword = graph.add_keyword(router, "sales")
        target = graph.add_node("message")
        graph.connect(router, keyword.handle_id, target)

        updated = graph.update_keyword(router, keyword.id, label="Sales team")
        assert updated.handle_id == "keyword-sales"
        assert len(graph.outgoing(router, "keyword-sales")) == 1

    def test_value_edit_regenerates_handle_and_prunes(self, graph, router):
        keyword = graph.add_keyword(router, "sales")
        target = graph.add_node("message")
        graph.connect(router, keyword.handle_id, target)

        updated = graph.update_keyword(router, keyword.id, value="buy now")
        assert updated.handle_id == "keyword-buy-now"
        assert graph.outgoing(router, "keyword-sales") == []

    def test_remove_keyword_prunes_only_its_edges(self, graph, router):
        sales = graph.add_keyword(router, "sales")
        billing = graph.add_keyword(router, "billing")
        t1, t2, t3 = (graph.add_node("message") for _ in range(3))
        graph.connect(router, sales.handle_id, t1)
        graph.connect(router, billing.handle_id, t2)
        graph.connect(router, "no-match", t3)

        graph.remove_keyword(router, sales.id)
        handles = [e.source_handle for e in graph.outgoing(router)]
        assert handles == ["keyword-billing", "no-match"]

    def test_unknown_keyword_raises(self, graph, router):
        with pytest.raises(UnknownKeyword):
            graph.remove_keyword(router, "missing")
        with pytest.raises(UnknownKeyword):
            graph.update_keyword(router, "missing", value="x")

    def test_replacing_keyword_list_prunes(self, graph, router):
        graph.update_node_data(router, {"keywords": [{"value": "a"}, {"value": "b"}]})
        t = graph.add_node("message")
        graph.connect(router, "keyword-a", t)
        graph.connect(router, "keyword-b", t)

        graph.update_node_data(router, {"keywords": [{"value": "b"}]})
        assert [e.source_handle for e in graph.outgoing(router)] == ["keyword-b"]

    def test_colliding_keywords_last_defined_wins(self, graph, router):
        graph.update_node_data(router, {"keywords": [
            {"value": "Help Me", "caseSensitive": False},
            {"value": "help  me", "caseSensitive": True},
        ]})
        keywords = graph.keywords(router)
        assert len(keywords) == 1
        assert keywords[0].value == "help  me"
        assert keywords[0].case_sensitive is True


class TestValidateAndSave:
    def test_validate_reports_dangling_edge(self, graph):
        from models.schemas import Edge
        a = graph.add_node("message")
        graph.flow.edges.append(Edge(id="bad", source=a, target="ghost"))
        codes = [d.code for d in graph.validate()]
        assert "dangling_edge" in codes

    def test_validate_clean_graph(self, graph):
        a, b = graph.add_node("trigger"), graph.add_node("message")
        graph.connect(a, None, b)
        assert graph.validate() == []

    def test_quick_reply_handles(self, graph):
        qr = graph.add_node("quickreply", data={"options": [{"text": "A"}, {"text": "B"}]})
        assert graph.handles_for(qr) == ["option-1", "option-2", "no-match"]

    def test_save_bumps_version_and_detaches(self, graph):
        graph.add_node("message")
        saved = graph.save()
        assert saved.version == 2
        saved.nodes.clear()
        assert len(graph.nodes) == 1
