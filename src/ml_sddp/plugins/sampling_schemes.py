r""" Sampling schemes for the forward pass

    A sampling scheme draws a scenario path
    $$(i_1, \omega_1), (i_2, \omega_2),\dots, (i_n, \omega_n)$$
    of visited nodes and realized noise terms through a policy graph, together with a flag indicating whether the walk was cut short on a graph that still had children to visit.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Hashable, Sequence
from typing import TYPE_CHECKING, Any, Optional

import torch

from ml_sddp.errors import ConfigurationError

if TYPE_CHECKING:
    from ml_sddp.base import PolicyGraph


ScenarioPath = list[tuple[Hashable, Any]]


class SamplingScheme(ABC):
    """Interface of sampling schemes"""
    @abstractmethod
    def sample_scenario(self,
                        policy_graph: PolicyGraph,
                        generator: Optional[torch.Generator] = None) -> tuple[ScenarioPath, bool]:
        """ Return a scenario path and whether it was terminated due to a cycle

            Parameters
            ----------
            policy_graph
                The policy graph to walk
            generator
                The source of randomness; optional, default the global generator of :mod:`torch`
        """


class InSampleMonteCarlo(SamplingScheme):
    r"""Monte Carlo walk over the policy graph using its own transition and noise probabilities

        Starting from the root, draws the next node from the outgoing edges (with an implicit stop outcome of probability $1 - \sum_j\Phi_{ij}$) and then a noise term of that node.
        The walk ends at a leaf, at a stop outcome, after ``max_depth`` nodes if ``max_depth`` is positive, or, if ``terminate_on_cycle``, at the first revisit of a node.
        Only the last two are reported as terminated due to a cycle.
    """
    def __init__(self, max_depth: int = 0, terminate_on_cycle: bool = False) -> None:
        if max_depth < 0:
            raise ConfigurationError(f"The maximum depth must be non-negative. It is {max_depth}.")
        self.max_depth = int(max_depth)
        self.terminate_on_cycle = terminate_on_cycle

    def __repr__(self) -> str:
        return f"InSampleMonteCarlo(max_depth={self.max_depth}, terminate_on_cycle={self.terminate_on_cycle})"

    def sample_scenario(self, policy_graph, generator=None):
        scenario_path: ScenarioPath = []
        visited = set()
        edges = policy_graph.root_children
        while edges:
            outcome = sample_categorical([probability for _, probability in edges], generator, allow_stop=True)
            if outcome is None:
                break
            node_index = edges[outcome].child
            if self.terminate_on_cycle and node_index in visited:
                return scenario_path, True
            visited.add(node_index)

            node = policy_graph[node_index]
            noise = node.noise_terms[
                sample_categorical([probability for _, probability in node.noise_terms], generator)
            ]
            scenario_path.append((node_index, noise.term))

            if not node.children:
                return scenario_path, False
            if 0 < self.max_depth <= len(scenario_path):
                return scenario_path, True
            edges = node.children
        return scenario_path, False


def sample_categorical(probabilities: Sequence[float],
                       generator: Optional[torch.Generator] = None,
                       allow_stop: bool = False) -> Optional[int]:
    """ Draw an index from the categorical distribution ``probabilities``

        If ``allow_stop``, the mass missing to one is assigned to a stop outcome for which ``None`` is returned.
    """
    weights = torch.tensor(list(probabilities), dtype=torch.float64)
    if allow_stop:
        stop = max(0.0, 1.0 - weights.sum().item())
        weights = torch.cat([weights, torch.tensor([stop], dtype=torch.float64)])
    index = torch.multinomial(weights, 1, generator=generator).item()
    if allow_stop and index == len(probabilities):
        return None
    return index
