from trustguard.trust.domain.graph import InteractionGraph, UnionFind, count_component_edges


def test_edges_are_undirected_and_merged() -> None:
    graph = InteractionGraph.from_edges(
        [
            ("did:plc:a", "did:plc:b", 2.0),
            ("did:plc:b", "did:plc:a", 3.0),
            ("did:plc:b", "did:plc:c", 1.0),
        ]
    )
    a = graph.index_of("did:plc:a")
    b = graph.index_of("did:plc:b")
    assert graph.neighbours(a)[b] == 5.0
    assert graph.neighbours(b)[a] == 5.0
    assert graph.edge_count == 2
    assert graph.node_count == 3


def test_self_loops_and_empty_weights_are_ignored() -> None:
    graph = InteractionGraph.from_edges([("did:plc:a", "did:plc:a", 4.0), ("did:plc:a", "did:plc:b", 0.0)])
    assert graph.edge_count == 0
    assert "did:plc:a" not in graph


def test_seed_nodes_exist_without_edges() -> None:
    graph = InteractionGraph.from_edges([], nodes=["did:plc:seed"])
    assert len(graph) == 1
    assert graph.degree(graph.index_of("did:plc:seed")) == 0


def test_component_edge_counts() -> None:
    graph = InteractionGraph.from_edges(
        [
            ("a", "b", 1.0),
            ("b", "c", 1.0),
            ("a", "c", 1.0),
            ("c", "outside", 1.0),
        ]
    )
    members = {graph.index_of(did) for did in ("a", "b", "c")}
    assert count_component_edges(graph, members) == (3, 1)


def test_union_find_groups() -> None:
    uf = UnionFind(5)
    uf.union(0, 1)
    uf.union(1, 2)
    uf.union(3, 4)
    groups = sorted(sorted(group) for group in uf.groups(range(5)))
    assert groups == [[0, 1, 2], [3, 4]]
