import pytest

from smopt.graph import Direction, StableGraph, add_graph


def test_add_node_and_lookup():
    g = StableGraph()
    a = g.add_node("a")
    b = g.add_node("b")
    assert g[a] == "a"
    assert g[b] == "b"
    assert g.node_count() == 2
    assert g.node_indices() == sorted([a, b])
    assert g.node_items() == sorted([(a, "a"), (b, "b")])


def test_setitem_replaces_weight():
    g = StableGraph()
    a = g.add_node("a")
    g[a] = "z"
    assert g.node_weights() == ["z"]


def test_remove_node_drops_incident_edges():
    g = StableGraph()
    a, b, c = g.add_node("a"), g.add_node("b"), g.add_node("c")
    g.add_edge(a, b, 0)
    g.add_edge(b, c, 1)
    assert g.remove_node(b) == "b"
    assert g.edges() == []
    assert not g.contains_node(b)
    assert b not in g
    assert g.node_indices() == sorted([a, c])
    assert g.edges_directed(a, Direction.OUTGOING) == []


def test_removed_indices_are_reused_last_freed_first():
    g = StableGraph()
    a, b = g.add_node("a"), g.add_node("b")
    g.remove_node(a)
    g.remove_node(b)
    assert g.add_node("x") == b
    assert g.add_node("y") == a


def test_edges_directed_newest_first():
    g = StableGraph()
    a, b, c = g.add_node("a"), g.add_node("b"), g.add_node("c")
    e1 = g.add_edge(a, b, "first")
    e2 = g.add_edge(a, c, "second")
    assert [e.id for e in g.edges_directed(a, Direction.OUTGOING)] == [e2, e1]
    assert g.neighbors_directed(a, Direction.OUTGOING) == [c, b]
    incoming = g.edges_directed(b, Direction.INCOMING)
    assert [(e.id, e.source, e.target, e.weight) for e in incoming] == [(e1, a, b, "first")]
    assert g.neighbors_directed(b, Direction.INCOMING) == [a]


def test_edges_in_index_order_and_edge_reuse():
    g = StableGraph()
    a, b = g.add_node("a"), g.add_node("b")
    e1 = g.add_edge(a, b, 1)
    e2 = g.add_edge(b, a, 2)
    assert [e.id for e in g.edges()] == sorted([e1, e2])
    assert g.remove_edge(e1) == 1
    assert [e.id for e in g.edges()] == [e2]
    assert g.add_edge(a, b, 3) == e1


def test_set_edge_weight():
    g = StableGraph()
    a, b = g.add_node("a"), g.add_node("b")
    e = g.add_edge(a, b, "old")
    g.set_edge_weight(e, "new")
    assert g.edges()[0].weight == "new"


def test_missing_nodes_raise_key_error():
    g = StableGraph()
    a = g.add_node("a")
    with pytest.raises(KeyError):
        g[a + 1]
    with pytest.raises(KeyError):
        g.remove_node(a + 1)
    with pytest.raises(KeyError):
        g.add_edge(a, a + 1, 0)
    g.remove_node(a)
    with pytest.raises(KeyError):
        g[a]


def test_is_cyclic():
    g = StableGraph()
    a, b, c = g.add_node("a"), g.add_node("b"), g.add_node("c")
    g.add_edge(a, b, 0)
    g.add_edge(b, c, 0)
    assert not g.is_cyclic()
    back = g.add_edge(c, a, 0)
    assert g.is_cyclic()
    g.remove_edge(back)
    assert not g.is_cyclic()
    g.add_edge(b, b, 0)
    assert g.is_cyclic()


def test_copy_is_independent():
    g = StableGraph()
    a, b = g.add_node("a"), g.add_node("b")
    g.add_edge(a, b, 0)
    h = g.copy()
    h.remove_node(a)
    h[b] = "changed"
    assert g.node_weights() == ["a", "b"]
    assert len(g.edges()) == 1
    assert h.node_weights() == ["changed"]


def test_add_graph_maps_structure():
    source = StableGraph()
    s = source.add_node("s")
    extend = StableGraph()
    x, y = extend.add_node("x"), extend.add_node("y")
    extend.add_edge(x, y, "xy")
    mapping = add_graph(source, extend)
    assert set(mapping) == {x, y}
    assert source[mapping[x]] == "x"
    assert source[mapping[y]] == "y"
    assert s not in mapping.values()
    edge = source.edges()[0]
    assert (edge.source, edge.target, edge.weight) == (mapping[x], mapping[y], "xy")
    assert source.node_count() == extend.node_count() + 1