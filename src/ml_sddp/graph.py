r""" Directed, weighted graphs underlying policy graphs

    A :class:`Graph` saves a distinguished *root node* together with, for every node $i$, the list of its children $j$ and the transition probabilities $\Phi_{ij}$ of the edges $i\to j$.
    Optionally, it saves a *belief partition*, a disjoint cover of the non-root nodes by *ambiguity sets* of observationally indistinguishable nodes.
"""
from __future__ import annotations

from collections.abc import Hashable, Iterable, Sequence
from typing import Any, Optional

import torch

from ml_sddp.errors import (
    DuplicateNodeError,
    GraphValidationError,
    MissingNodeError,
    WrongEdgeEndpointError,
)


PROBABILITY_TOLERANCE = 1e-9

NodeIndex = Hashable


class Graph:
    r"""Generic directed graph with weighted edges and a distinguished root

        The children of node ``i`` are available as ``graph.nodes[i]``, a list of ``(child, probability)``-tuples.
        The root node has no incoming edges and is not part of the belief partition.
    """
    def __init__(self, root_node: NodeIndex) -> None:
        self.root_node = root_node
        self.nodes: dict[NodeIndex, list[tuple[NodeIndex, float]]] = {root_node: []}
        self.belief_partition: list[list[NodeIndex]] = []

    def add_node(self, node: NodeIndex) -> None:
        """ Add a node without any children

            Raises
            ------
            DuplicateNodeError
                Raised if ``node`` already exists (or is the root node).
        """
        if node in self.nodes or node == self.root_node:
            raise DuplicateNodeError(f"Node {node!r} already exists.")
        self.nodes[node] = []

    def add_edge(self, parent: NodeIndex, child: NodeIndex, probability: float) -> None:
        """ Add the edge ``parent -> child`` with transition probability ``probability``

            Raises
            ------
            MissingNodeError
                Raised if either endpoint does not exist.
            WrongEdgeEndpointError
                Raised if ``child`` is the root node.
        """
        if parent not in self.nodes:
            raise MissingNodeError(f"Node {parent!r} does not exist.")
        if child == self.root_node:
            raise WrongEdgeEndpointError("Cannot have an edge entering the root node.")
        if child not in self.nodes:
            raise MissingNodeError(f"Node {child!r} does not exist.")
        self.nodes[parent].append((child, float(probability)))

    def add_partition(self, ambiguity_set: Iterable[NodeIndex]) -> None:
        """ Add an ambiguity set to the belief partition"""
        self.belief_partition.append(list(ambiguity_set))

    def children(self, node: NodeIndex) -> list[tuple[NodeIndex, float]]:
        try:
            return self.nodes[node]
        except KeyError:
            raise MissingNodeError(f"Node {node!r} does not exist.") from None

    def validate(self) -> None:
        r"""Check that ``self`` is a valid policy graph structure

            Requires that the probabilities of the edges leaving each node sum to a value in $[0, 1]$ and that the belief partition, if non-empty, is a disjoint cover of the non-root nodes.

            Raises
            ------
            GraphValidationError
                Raised if any of the requirements fails.
        """
        for node, children in self.nodes.items():
            if children:
                probability = sum(probability for _, probability in children)
                if not (0.0 <= probability <= 1.0 + PROBABILITY_TOLERANCE):
                    raise GraphValidationError(
                        f"Probability on edges leaving node {node!r} sum to {probability}, "
                        "but this must be in [0.0, 1.0]"
                    )
                if any(probability < 0.0 for _, probability in children):
                    raise GraphValidationError(f"Negative edge probability leaving node {node!r}.")

        if self.belief_partition:
            members = [node for ambiguity_set in self.belief_partition for node in ambiguity_set]
            if self.root_node in members:
                raise GraphValidationError(
                    f"Belief partition {self.belief_partition} cannot contain the root node {self.root_node!r}."
                )
            if len(members) != len(set(members)):
                raise GraphValidationError(
                    f"Belief partition {self.belief_partition} contains overlapping sets."
                )
            non_root = set(self.nodes) - {self.root_node}
            if set(members) != non_root:
                raise GraphValidationError(
                    f"Belief partition {self.belief_partition} does not form a valid partition of the nodes in the graph."
                )

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        return (f"Graph(root_node={self.root_node!r}, nodes={len(self.nodes) - 1}, "
                f"edges={sum(map(len, self.nodes.values()))}, partitions={len(self.belief_partition)})")

    @classmethod
    def from_edges(cls,
                   root_node: NodeIndex,
                   nodes: Iterable[NodeIndex],
                   edges: Iterable[tuple[NodeIndex, NodeIndex, float]],
                   belief_partition: Optional[Iterable[Iterable[NodeIndex]]] = None) -> Graph:
        """ Construct a :class:`Graph` from lists of nodes and edges

            Parameters
            ----------
            root_node
                The root node
            nodes
                The non-root nodes
            edges
                The ``(parent, child, probability)``-triples
            belief_partition
                The ambiguity sets (optional)
        """
        graph = cls(root_node)
        for node in nodes:
            graph.add_node(node)
        for parent, child, probability in edges:
            graph.add_edge(parent, child, probability)
        for ambiguity_set in (belief_partition or []):
            graph.add_partition(ambiguity_set)
        return graph

    @classmethod
    def linear(cls, stages: int) -> Graph:
        r"""Construct the chain $0 \to 1 \to \dots \to T$ with root $0$ and $T$ = ``stages``"""
        return cls.from_edges(
            0,
            range(1, stages + 1),
            [(stage - 1, stage, 1.0) for stage in range(1, stages + 1)]
        )

    @classmethod
    def markovian(cls, transition_matrices: Sequence[Any]) -> Graph:
        r"""Construct a Markovian graph from a sequence of transition matrices

            The $t$-th matrix $P^{(t)}$ (counting from one) has entry $P^{(t)}_{ik}$ equal to the probability of moving from Markov state $i$ in stage $t-1$ to Markov state $k$ in stage $t$.
            The first matrix must be of size $(1, N_1)$ and describes the transition out of the root node ``(0, 0)``.
            Nodes are ``(stage, markov_state)``-tuples with zero-based Markov states; edges of zero probability are omitted.

            Raises
            ------
            GraphValidationError
                Raised if a matrix has negative entries, rows summing outside $[0, 1]$ or dimensions incompatible with the previous stage.
        """
        matrices = [torch.as_tensor(matrix, dtype=torch.float64) for matrix in transition_matrices]
        if not matrices or matrices[0].dim() != 2 or matrices[0].size(0) != 1:
            size = tuple(matrices[0].size()) if matrices else None
            raise GraphValidationError(
                f"Expected the first transition matrix to be of size (1, N). It is of size {size}."
            )

        nodes = []
        edges = []
        for stage, transition in enumerate(matrices, 1):
            if transition.dim() != 2:
                raise GraphValidationError(f"Transition matrix for stage {stage} is not a matrix.")
            if (transition < 0.0).any():
                raise GraphValidationError("Entries in the transition matrix must be non-negative.")
            row_sums = transition.sum(dim=1)
            if ((row_sums < 0.0) | (row_sums > 1.0 + PROBABILITY_TOLERANCE)).any():
                raise GraphValidationError("Rows in the transition matrix must sum to between 0.0 and 1.0.")
            if stage > 1 and matrices[stage - 2].size(1) != transition.size(0):
                raise GraphValidationError(f"Transition matrix for stage {stage} is the wrong size.")

            nodes.extend((stage, markov_state) for markov_state in range(transition.size(1)))
            for markov_state in range(transition.size(1)):
                for last_markov_state in range(transition.size(0)):
                    probability = transition[last_markov_state, markov_state].item()
                    if probability > 0.0:
                        edges.append(((stage - 1, last_markov_state), (stage, markov_state), probability))

        return cls.from_edges((0, 0), nodes, edges)

    @classmethod
    def markovian_from_matrix(cls,
                              stages: int = 1,
                              transition_matrix: Any = ((1.0,),),
                              root_node_transition: Any = (1.0,)) -> Graph:
        """ Construct a Markovian graph with a stage-independent transition matrix

            Equivalent to :meth:`markovian` applied to ``[[root_node_transition], transition_matrix, ..., transition_matrix]`` (``stages - 1`` copies of ``transition_matrix``).
        """
        root_row = torch.as_tensor(root_node_transition, dtype=torch.float64).reshape(1, -1)
        return cls.markovian([root_row] + [transition_matrix] * (stages - 1))
