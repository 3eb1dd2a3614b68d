"""Tests for the arrange-flow command."""
import json

from graph.serializer import deserialize, serialize
from scripts.arrange_flow import main


def test_rewrites_positions_in_place(tmp_path, support_flow, capsys):
    path = tmp_path / "flow.json"
    path.write_text(serialize(support_flow))

    assert main([str(path)]) == 0
    arranged = deserialize(path.read_text())
    rows = {n.id: n.position.y for n in arranged.nodes}
    assert rows["trigger"] < rows["greet"] < rows["menu"] < rows["sales"] == rows["support"]
    assert "Arranged 5 nodes in 4 rows" in capsys.readouterr().out


def test_output_path_leaves_source_untouched(tmp_path, support_flow):
    source = tmp_path / "flow.json"
    source.write_text(serialize(support_flow))
    original = source.read_text()

    assert main([str(source), "-o", str(tmp_path / "out.json")]) == 0
    assert source.read_text() == original
    assert json.loads((tmp_path / "out.json").read_text())["id"] == "flow_support"


def test_cycles_reported_on_stderr(tmp_path, support_flow, capsys):
    support_flow.edges.append(support_flow.edges[0].model_copy(update={"id": "back", "source": "sales", "target": "menu"}))
    path = tmp_path / "flow.json"
    path.write_text(serialize(support_flow))

    assert main([str(path)]) == 0
    assert "cycle_broken" in capsys.readouterr().err


def test_unreadable_flow(tmp_path, capsys):
    path = tmp_path / "flow.json"
    path.write_text("{not json")
    assert main([str(path)]) == 1
    assert "cannot read" in capsys.readouterr().err
