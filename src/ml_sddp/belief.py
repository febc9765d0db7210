r""" Bayesian belief updates over the nodes of partially observable policy graphs

    Given node transition probabilities $\Phi_{ij}$, noise distributions $\Omega_i(\omega)$ and a partition of the nodes into ambiguity sets $A_0,\dots, A_K$, the belief $b$ over the nodes is updated upon observing the ambiguity set $A_k$ and the noise $\omega$ using Bayes' theorem:
    $$P(Y) = \sum_i b_i \sum_j \Phi_{ij}\,\Omega_j(\omega),\qquad P(X_i') = \sum_j b_j\,\Phi_{ji}$$
    and
    $$b_i' = \frac{\mathbb{1}_{i\in A_k}\,\Omega_i(\omega)\,P(X_i')}{P(Y)}.$$
"""
from __future__ import annotations

from collections.abc import Hashable, Sequence
from typing import TYPE_CHECKING, Any

from ml_sddp.errors import BeliefUpdateError

if TYPE_CHECKING:
    from ml_sddp.base import PolicyGraph


NodeIndex = Hashable


def build_transition_map(policy_graph: PolicyGraph) -> dict[tuple[NodeIndex, NodeIndex], float]:
    r"""Return the map $(i, j)\mapsto\Phi_{ij}$ over all edges between non-root nodes"""
    transition_map = {}
    for node_index, node in policy_graph.nodes.items():
        for child, probability in node.children:
            transition_map[(node_index, child)] = probability
    return transition_map


def build_noise_map(policy_graph: PolicyGraph) -> dict[NodeIndex, dict[Any, float]]:
    r"""Return the map $i\mapsto\Omega_i$ of the noise distributions of the nodes"""
    noise_map = {}
    for node_index, node in policy_graph.nodes.items():
        distribution: dict[Any, float] = {}
        for term, probability in node.noise_terms:
            distribution[term] = distribution.get(term, 0.0) + probability
        noise_map[node_index] = distribution
    return noise_map


class BeliefUpdater:
    r"""Compute posterior beliefs in a partially observable policy graph

        Precomputes $\Phi$ and $\Omega$ from the policy graph at construction; as a callable, implements
        $$(b, k, \omega)\mapsto b'$$
        with $k$ the zero-based index of the observed ambiguity set.
    """
    def __init__(self, policy_graph: PolicyGraph, partition: Sequence[set[NodeIndex]]) -> None:
        self.partition = [set(ambiguity_set) for ambiguity_set in partition]
        self.transition_map = build_transition_map(policy_graph)
        self.noise_map = build_noise_map(policy_graph)

    def __call__(self,
                 incoming_belief: dict[NodeIndex, float],
                 observed_partition: int,
                 observed_noise: Any) -> dict[NodeIndex, float]:
        """ Return the posterior belief

            Parameters
            ----------
            incoming_belief
                The prior belief, a map from nodes to probabilities
            observed_partition
                The index of the observed ambiguity set
            observed_noise
                The observed noise realization

            Returns
            -------
            dict
                The posterior belief over the nodes of ``incoming_belief``.

            Raises
            ------
            BeliefUpdateError
                Raised if the observation has probability zero under ``incoming_belief``.
        """
        ambiguity_set = self.partition[observed_partition]

        probability_observation = 0.0
        for node_i, belief in incoming_belief.items():
            probability = sum(
                self.transition_map.get((node_i, node_j), 0.0) * distribution.get(observed_noise, 0.0)
                for node_j, distribution in self.noise_map.items()
            )
            probability_observation += belief * probability

        if probability_observation <= 0.0:
            raise BeliefUpdateError(
                f"Observation of noise {observed_noise!r} in partition {observed_partition} "
                "is impossible under the incoming belief."
            )

        outgoing_belief = {}
        for node_i in incoming_belief:
            probability_node = sum(
                belief * self.transition_map.get((node_j, node_i), 0.0)
                for node_j, belief in incoming_belief.items()
            )
            likelihood = self.noise_map[node_i].get(observed_noise, 0.0) if node_i in ambiguity_set else 0.0
            outgoing_belief[node_i] = likelihood * probability_node / probability_observation
        return outgoing_belief
