# backend/tests/unit/test_graph.py

import pytest

from leadflow.flows.errors import FlowConfigurationError
from fakes import make_edge, make_flow, make_graph, make_node

FLOW = "f-graph"


def graph(nodes, edges):
    return make_graph(make_flow(FLOW), nodes, edges)


def basic_nodes():
    return [
        make_node(FLOW, "s", "start"),
        make_node(FLOW, "c", "condition", field="tag", value="vip"),
        make_node(FLOW, "a", "message", message="A"),
        make_node(FLOW, "b", "message", message="B"),
        make_node(FLOW, "e", "end"),
    ]


def test_valid_graph_passes_and_exposes_start():
    g = graph(basic_nodes(), [
        make_edge(FLOW, "s", "c"),
        make_edge(FLOW, "c", "a", "true"),
        make_edge(FLOW, "c", "b"),
        make_edge(FLOW, "a", "e"),
    ]).validate()
    assert g.start_node.id == "s"
    assert g.handles("c") == ["true", None]


def test_missing_start_node():
    with pytest.raises(FlowConfigurationError, match="exactly one start node"):
        graph([make_node(FLOW, "e", "end")], []).validate()


def test_two_start_nodes():
    nodes = [make_node(FLOW, "s1", "start"), make_node(FLOW, "s2", "start")]
    with pytest.raises(FlowConfigurationError, match="found 2"):
        graph(nodes, []).validate()


def test_duplicate_node_ids_are_rejected():
    with pytest.raises(FlowConfigurationError, match="Duplicate node"):
        graph([make_node(FLOW, "s", "start"), make_node(FLOW, "s", "end")], [])


def test_dangling_edge():
    with pytest.raises(FlowConfigurationError, match="missing node"):
        graph(basic_nodes(), [make_edge(FLOW, "s", "ghost")]).validate()


def test_inbound_edge_to_start():
    with pytest.raises(FlowConfigurationError, match="inbound edge"):
        graph(basic_nodes(), [make_edge(FLOW, "s", "a"), make_edge(FLOW, "a", "s")]).validate()


def test_two_edges_on_same_handle():
    with pytest.raises(FlowConfigurationError, match="more than one edge"):
        graph(basic_nodes(), [make_edge(FLOW, "c", "a", "true"), make_edge(FLOW, "c", "b", "true")]).validate()


def test_edge_leaving_end_node():
    with pytest.raises(FlowConfigurationError, match="End node"):
        graph(basic_nodes(), [make_edge(FLOW, "e", "a")]).validate()


def test_blank_handle_is_the_default_edge():
    g = graph(basic_nodes(), [make_edge(FLOW, "s", "c", "  ")])
    assert g.next_node_id("s") == "c"


def test_next_node_falls_back_to_unlabeled_edge():
    g = graph(basic_nodes(), [make_edge(FLOW, "c", "a", "true"), make_edge(FLOW, "c", "b")])
    assert g.next_node_id("c", "true") == "a"
    assert g.next_node_id("c", "false") == "b"
    assert g.next_node_id("c", "false", fallback=False) is None


def test_node_without_exit_has_no_next():
    g = graph(basic_nodes(), [make_edge(FLOW, "c", "a", "true")])
    assert g.next_node_id("a") is None
    assert g.next_node_id("c", "false") is None


def test_unknown_node_lookup_raises():
    g = graph(basic_nodes(), [])
    with pytest.raises(FlowConfigurationError, match="does not exist"):
        g.node("ghost")


def test_following_edge_to_missing_node_raises():
    g = graph(basic_nodes(), [make_edge(FLOW, "a", "ghost")])
    with pytest.raises(FlowConfigurationError, match="missing node"):
        g.next_node_id("a")
