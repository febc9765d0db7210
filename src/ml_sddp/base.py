r""" Implementations of nodes and policy graphs

    A :class:`PolicyGraph` is built from a validated :class:`ml_sddp.graph.Graph` and a *builder*, a callable
    $$\mathrm{builder}(\mathrm{node}, i)$$
    that declares, for each non-root node $i$, the state variables $(x^{\mathrm{in}}, x^{\mathrm{out}})$, the stage objective $C_i(x^{\mathrm{in}}, u, \omega)$ and the noise terms $\omega\in\Omega_i$ of the node's :class:`ml_sddp.subproblem.Subproblem`.
    Each node additionally saves a Bellman function approximating the value-to-go
    $$\mathcal{V}_i(x^{\mathrm{out}}) = \mathbb{F}_{j\in i^+,\ \varphi\in\Omega_j}\left[V_j(x^{\mathrm{out}}, \varphi)\right]$$
    so that the node's subproblem, as solved during training, has the objective $C_i + \theta$ with $\theta$ the Bellman term.
"""
from __future__ import annotations

import math
from collections.abc import Callable, Hashable, Iterable, Iterator, Sequence
from typing import Any, NamedTuple, Optional

from ml_sddp.belief import BeliefUpdater
from ml_sddp.errors import ConfigurationError, MissingNodeError
from ml_sddp.graph import Graph
from ml_sddp.plugins.bellman_functions import AverageCut, BellmanFunction
from ml_sddp.subproblem import LinearExpression, Subproblem, Variable
from ml_sddp.utils._repr import create_table


NodeIndex = Hashable

BELIEF_DUAL_BOUND = 1e6


class Noise(NamedTuple):
    """A noise realization ``term`` together with its probability"""
    term: Any
    probability: float


class Edge(NamedTuple):
    """An edge to ``child`` with transition probability ``probability``"""
    child: NodeIndex
    probability: float


class State(NamedTuple):
    """The incoming and outgoing copies of a state variable"""
    in_: Any
    out: Any


class BeliefState(NamedTuple):
    """Belief-related storage of a node in a partially observable policy graph"""
    partition_index: int
    belief: dict[NodeIndex, float]
    mu: dict[NodeIndex, Variable]
    updater: BeliefUpdater


class Node:
    r"""A node of a :class:`PolicyGraph`

        Owns its :class:`ml_sddp.subproblem.Subproblem` exclusively.
        Within a builder, declare state variables with :meth:`add_state`, the stage objective with :meth:`set_stage_objective` and the noise terms with :meth:`parameterize`.
    """
    def __init__(self, index: NodeIndex) -> None:
        self.index = index
        self.subproblem = Subproblem(index)
        self.children: list[Edge] = []
        self.noise_terms: list[Noise] = []
        self.states: dict[str, State] = {}
        self.initial_values: dict[str, float] = {}
        self.stage_objective: Any = 0.0
        self.stage_objective_set = False
        self.bellman_function: Optional[BellmanFunction] = None
        self.belief_state: Optional[BeliefState] = None
        self._modify: Callable[[Any], Any] = _do_nothing

    def __repr__(self) -> str:
        return (f"Node({self.index!r}, states={list(self.states)}, children={len(self.children)}, "
                f"noise_terms={len(self.noise_terms)})")

    def add_state(self,
                  name: str,
                  initial_value: float,
                  lower_bound: float = -math.inf,
                  upper_bound: float = math.inf) -> State:
        r"""Add a state variable

            Creates the unbounded incoming copy ``name_in`` (fixed to the incoming state on each solve) and the outgoing copy ``name_out`` bounded by ``lower_bound`` and ``upper_bound``.

            Parameters
            ----------
            name
                The name of the state variable
            initial_value
                The value of the state variable at the root node
            lower_bound
                Lower bound of the outgoing copy; optional, default $-\infty$
            upper_bound
                Upper bound of the outgoing copy; optional, default $\infty$

            Returns
            -------
            State
                The pair of incoming and outgoing variables.

            Raises
            ------
            ValueError
                Raised if a state variable of the same name already exists.
        """
        if name in self.states:
            raise ValueError(f"The state {name!r} already exists.")
        state = State(
            self.subproblem.add_variable(f"{name}_in"),
            self.subproblem.add_variable(f"{name}_out", lower_bound, upper_bound)
        )
        self.subproblem.register(name, state)
        self.states[name] = state
        self.initial_values[name] = float(initial_value)
        return state

    def parameterize(self,
                     realizations: Iterable[Any],
                     probabilities: Optional[Sequence[float]] = None) -> Callable:
        r"""Declare the noise terms of ``self`` and decorate the function applying them

            The decorated function ``modify(noise)`` modifies :attr:`subproblem` given a realization of the noise.
            Out-of-sample simulation may call it with realizations not in ``realizations``.

            Example
            -------
            >>> @node.parameterize([1, 2, 3], [0.4, 0.3, 0.3])
            ... def _(noise):
            ...     node.subproblem.set_upper_bound(x, noise)

            Raises
            ------
            ValueError
                Raised on a second call, if ``realizations`` and ``probabilities`` differ in length or if ``probabilities`` does not sum to one.
        """
        if self.noise_terms:
            raise ValueError("Duplicate calls to parameterize detected. Only parameterize a node at most one time.")
        realizations = list(realizations)
        if probabilities is None:
            probabilities = [1.0 / len(realizations)] * len(realizations)
        if len(probabilities) != len(realizations):
            raise ValueError("Provide one probability per realization.")
        if abs(math.fsum(probabilities) - 1.0) > 1e-9:
            raise ValueError(f"Noise probabilities must sum to one. They sum to {math.fsum(probabilities)}.")

        self.noise_terms = [Noise(realization, float(probability))
                            for realization, probability in zip(realizations, probabilities)]

        def decorator(modify: Callable[[Any], Any]) -> Callable[[Any], Any]:
            self._modify = modify
            return modify

        return decorator

    def apply_noise(self, noise: Any) -> None:
        """ Apply the noise realization ``noise`` to :attr:`subproblem`"""
        self._modify(noise)

    def set_stage_objective(self, stage_objective: Any) -> None:
        """ Set the stage objective; it is installed in :attr:`subproblem` on the next solve"""
        self.stage_objective = stage_objective
        self.stage_objective_set = False

    def stage_objective_value(self) -> float:
        if isinstance(self.stage_objective, (Variable, LinearExpression)):
            return self.subproblem.value(self.stage_objective)
        return float(self.stage_objective)


class PolicyGraph:
    r"""A policy graph of nodes with optimization subproblems

        Built once from a :class:`ml_sddp.graph.Graph` and a builder; afterwards only mutated by cut insertion during training.
    """
    def __init__(self,
                 builder: Callable[[Node, NodeIndex], Any],
                 graph: Graph,
                 sense: str = "min",
                 bellman_function: Optional[BellmanFunction] = None) -> None:
        r"""Construct a :class:`PolicyGraph`

            Parameters
            ----------
            builder
                Called as ``builder(node, index)`` for every non-root node of ``graph``
            graph
                The underlying graph
            sense
                ``"min"`` or ``"max"``; optional, default ``"min"``
            bellman_function
                The Bellman function to initialize at every node; optional, default ``AverageCut()``

            Raises
            ------
            GraphValidationError
                Raised, before any node is built, if ``graph`` is malformed.
            ConfigurationError
                Raised if ``sense`` is neither ``"min"`` nor ``"max"``.
        """
        graph.validate()
        if sense not in ("min", "max"):
            raise ConfigurationError(f"The optimization sense must be 'min' or 'max'. It is {sense!r}.")

        self.objective_sense = sense
        self.root_node = graph.root_node
        self.root_children: list[Edge] = []
        self.initial_root_state: dict[str, float] = {}
        self.nodes: dict[NodeIndex, Node] = {}
        self.belief_partition: list[set[NodeIndex]] = []

        if bellman_function is None:
            bellman_function = AverageCut()

        for node_index in graph.nodes:
            if node_index == graph.root_node:
                continue
            node = Node(node_index)
            self.nodes[node_index] = node
            builder(node, node_index)
            # Every node has at least one noise term
            if not node.noise_terms:
                node.noise_terms.append(Noise(None, 1.0))
            self.initial_root_state.update(node.initial_values)

        # Bellman functions need to know whether a node is terminal
        for node_index, children in graph.nodes.items():
            if node_index == graph.root_node:
                continue
            node = self.nodes[node_index]
            node.children = [Edge(child, probability) for child, probability in children]
            node.bellman_function = bellman_function.initialize(self, node)

        self.root_children = [Edge(child, probability) for child, probability in graph.nodes[graph.root_node]]

        if graph.belief_partition:
            partition = [set(ambiguity_set) for ambiguity_set in graph.belief_partition]
            updater = BeliefUpdater(self, partition)
            belief = {node_index: 0.0 for node_index in self.nodes}
            for partition_index, ambiguity_set in enumerate(partition):
                self.belief_partition.append(ambiguity_set)
                for node_index in ambiguity_set:
                    node = self.nodes[node_index]
                    # One variable per node of the ambiguity set for cuts of the form
                    # theta >= alpha + <beta, x> - <b, mu>
                    mu = {
                        member: node.subproblem.add_variable(lower_bound=0.0, upper_bound=BELIEF_DUAL_BOUND)
                        for member in graph.belief_partition[partition_index]
                    }
                    node.belief_state = BeliefState(partition_index, dict(belief), mu, updater)

    @property
    def is_minimization(self) -> bool:
        return self.objective_sense == "min"

    def __getitem__(self, index: NodeIndex) -> Node:
        try:
            return self.nodes[index]
        except KeyError:
            raise MissingNodeError(f"Node {index!r} does not exist.") from None

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[NodeIndex]:
        return iter(self.nodes)

    def as_table(self, width: Optional[int] = None, height: Optional[int] = None) -> str:
        """ Return a string representation of ``self`` as a table

            Parameters
            ----------
            width
                The width of the table (optional).
            height
                The height of the table (optional).
        """
        return "\n".join(create_table(self, width=width, height=height))

    def __repr__(self) -> str:
        return self.as_table()


def _do_nothing(noise: Any) -> None:
    return None
