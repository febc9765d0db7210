"""Tests for graphs underlying policy graphs."""

import pytest

from ml_sddp.errors import (
    DuplicateNodeError,
    GraphValidationError,
    MissingNodeError,
    WrongEdgeEndpointError,
)
from ml_sddp.graph import Graph


# ============================================================================
# Construction
# ============================================================================


def test_linear_graph() -> None:
    """Test that a chain of length n has n + 1 nodes connected with probability one."""
    graph = Graph.linear(3)

    assert graph.root_node == 0
    assert len(graph) == 4
    assert graph.nodes[0] == [(1, 1.0)]
    assert graph.nodes[1] == [(2, 1.0)]
    assert graph.nodes[2] == [(3, 1.0)]
    assert graph.nodes[3] == []
    assert graph.belief_partition == []
    graph.validate()


def test_from_edges() -> None:
    """Test construction from node and edge lists."""
    graph = Graph.from_edges(
        "root",
        ["a", "b"],
        [("root", "a", 0.5), ("root", "b", 0.5), ("a", "a", 0.9), ("b", "b", 0.9)],
        belief_partition=[["a", "b"]],
    )

    assert graph.children("a") == [("a", 0.9)]
    assert graph.belief_partition == [["a", "b"]]
    graph.validate()


def test_add_duplicate_node() -> None:
    """Test that adding an existing node raises."""
    graph = Graph.linear(1)

    with pytest.raises(DuplicateNodeError):
        graph.add_node(1)
    with pytest.raises(DuplicateNodeError):
        graph.add_node(0)


def test_add_edge_missing_node() -> None:
    """Test that edges require both endpoints to exist."""
    graph = Graph.linear(1)

    with pytest.raises(MissingNodeError, match="does not exist"):
        graph.add_edge(1, 2, 1.0)
    with pytest.raises(MissingNodeError, match="does not exist"):
        graph.add_edge(2, 1, 1.0)


def test_add_edge_into_root() -> None:
    """Test that no edge may enter the root node."""
    graph = Graph.linear(1)

    with pytest.raises(WrongEdgeEndpointError, match="root"):
        graph.add_edge(1, 0, 1.0)


def test_children_missing_node() -> None:
    """Test that looking up the children of a missing node raises."""
    with pytest.raises(MissingNodeError):
        Graph.linear(1).children(5)


# ============================================================================
# Validation
# ============================================================================


def test_validate_probability_too_large() -> None:
    """Test that outgoing probabilities summing to more than one are rejected."""
    graph = Graph.linear(2)
    graph.add_edge(2, 1, 0.5)
    graph.add_edge(1, 1, 0.5)

    with pytest.raises(GraphValidationError, match="must be in"):
        graph.validate()


def test_validate_negative_probability() -> None:
    """Test that negative edge probabilities are rejected."""
    graph = Graph.from_edges(0, [1, 2], [(0, 1, 1.0), (1, 1, 0.5), (1, 2, -0.2)])

    with pytest.raises(GraphValidationError, match="Negative"):
        graph.validate()


def test_validate_partition_with_root() -> None:
    """Test that the root node cannot be part of the belief partition."""
    graph = Graph.linear(2)
    graph.add_partition([0, 1])
    graph.add_partition([2])

    with pytest.raises(GraphValidationError, match="root"):
        graph.validate()


def test_validate_overlapping_partition() -> None:
    """Test that ambiguity sets must be disjoint."""
    graph = Graph.linear(2)
    graph.add_partition([1, 2])
    graph.add_partition([2])

    with pytest.raises(GraphValidationError, match="overlapping"):
        graph.validate()


def test_validate_partition_not_covering() -> None:
    """Test that ambiguity sets must cover all non-root nodes."""
    graph = Graph.linear(3)
    graph.add_partition([1, 2])

    with pytest.raises(GraphValidationError, match="valid partition"):
        graph.validate()


# ============================================================================
# Markovian graphs
# ============================================================================


def test_markovian_graph() -> None:
    """Test the nodes and edges of a Markovian graph."""
    graph = Graph.markovian([
        [[0.5, 0.5]],
        [[0.8, 0.2], [0.2, 0.8]],
    ])

    assert graph.root_node == (0, 0)
    assert len(graph) == 5
    assert graph.nodes[(0, 0)] == [((1, 0), 0.5), ((1, 1), 0.5)]
    assert sorted(graph.nodes[(1, 0)]) == [((2, 0), pytest.approx(0.8)), ((2, 1), pytest.approx(0.2))]
    assert graph.nodes[(2, 1)] == []
    graph.validate()


def test_markovian_graph_omits_zero_probability_edges() -> None:
    """Test that edges of probability zero are not added."""
    graph = Graph.markovian([[[1.0, 0.0]], [[1.0, 0.0], [0.0, 1.0]]])

    assert graph.nodes[(0, 0)] == [((1, 0), 1.0)]
    assert graph.nodes[(1, 0)] == [((2, 0), 1.0)]


def test_markovian_graph_first_matrix_size() -> None:
    """Test that the first matrix must have a single row."""
    with pytest.raises(GraphValidationError, match="first transition matrix"):
        Graph.markovian([[[0.5, 0.5], [0.5, 0.5]]])


def test_markovian_graph_negative_entries() -> None:
    """Test that negative transition probabilities are rejected."""
    with pytest.raises(GraphValidationError, match="non-negative"):
        Graph.markovian([[[0.5, 0.5]], [[1.2, -0.2], [0.5, 0.5]]])


def test_markovian_graph_row_sums() -> None:
    """Test that rows summing to more than one are rejected."""
    with pytest.raises(GraphValidationError, match="sum"):
        Graph.markovian([[[0.5, 0.5]], [[0.8, 0.8], [0.5, 0.5]]])


def test_markovian_graph_dimension_mismatch() -> None:
    """Test that consecutive matrices must have compatible dimensions."""
    with pytest.raises(GraphValidationError, match="wrong size"):
        Graph.markovian([[[0.5, 0.5]], [[0.5, 0.5], [0.5, 0.5], [0.5, 0.5]]])


def test_markovian_from_matrix() -> None:
    """Test that the stage-independent form agrees with the list form."""
    transition_matrix = [[0.8, 0.2], [0.2, 0.8]]
    graph = Graph.markovian_from_matrix(
        stages=3, transition_matrix=transition_matrix, root_node_transition=[0.5, 0.5]
    )
    expected = Graph.markovian([[[0.5, 0.5]], transition_matrix, transition_matrix])

    assert graph.root_node == expected.root_node
    assert graph.nodes == expected.nodes


def test_markovian_from_matrix_defaults() -> None:
    """Test that the defaults describe a single deterministic stage."""
    graph = Graph.markovian_from_matrix()

    assert graph.nodes == {(0, 0): [((1, 0), 1.0)], (1, 0): []}
