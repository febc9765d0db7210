r""" Bellman functions: cutting-plane approximations of the value-to-go

    A Bellman function of a node $i$ with children approximates the risk-adjusted value-to-go $\mathcal{V}_i(x)$ from below (when minimizing) by the maximum of a growing collection of *cuts*
    $$\theta \geq \alpha_c + \beta_c'x,\quad c = 1,\dots, C,$$
    installed as constraints into the node's subproblem.
    Given an outgoing state $\bar{x}$ and, for the children-noise pairs $k$, the objective realizations $f_k$, the duals $\lambda_k$ on the fixed incoming state and the risk-adjusted probabilities $q_k$, a new cut has
    $$\beta = \sum_k q_k\lambda_k,\qquad \alpha = \sum_k q_k f_k - \beta'\bar{x}.$$
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import torch

from ml_sddp.errors import ConfigurationError
from ml_sddp.subproblem import Constraint, Variable

if TYPE_CHECKING:
    from ml_sddp.base import Node, Noise, PolicyGraph
    from ml_sddp.plugins.risk_measures import RiskMeasure


class BellmanFunction(ABC):
    """Interface of Bellman functions

        An instance passed to :class:`ml_sddp.base.PolicyGraph` acts as a template: :meth:`initialize` is called once per node and returns the node's own Bellman function.
    """
    @abstractmethod
    def initialize(self, policy_graph: PolicyGraph, node: Node) -> BellmanFunction:
        """ Return a new Bellman function for ``node``, with its variables added to the node's subproblem"""

    @abstractmethod
    def refine(self,
               policy_graph: PolicyGraph,
               node: Node,
               risk_measure: RiskMeasure,
               outgoing_state: dict[str, float],
               dual_variables: Sequence[dict[str, float]],
               noise_supports: Sequence[Noise],
               original_probability: Sequence[float],
               objective_realizations: Sequence[float]) -> None:
        """ Refine the approximation at ``outgoing_state`` given the solutions of the children of ``node``"""

    @abstractmethod
    def bellman_term(self) -> Any:
        """ Return the term to be added to the stage objective of the node"""


@dataclass(eq=False)
class Cut:
    r"""The cut $\theta\ \{\geq, \leq\}\ \alpha + \beta'x$

        :attr:`constraint` is ``None`` if the cut is not installed in the subproblem.
        :attr:`removed` marks cuts deleted from the subproblem as dominated; they are reinstalled once they are the best cut at a visited state again.
    """
    intercept: float
    coefficients: dict[str, float]
    constraint: Optional[Constraint] = None
    non_dominated_count: int = 0
    removed: bool = False

    def evaluate(self, state: dict[str, float]) -> float:
        return self.intercept + sum(coefficient * state[name] for name, coefficient in self.coefficients.items())


@dataclass(eq=False)
class SampledState:
    """A state visited during training together with the best cut at that state"""
    state: dict[str, float]
    best_objective: float
    best_cut_index: int


def dominates(is_minimization: bool, trial: float, incumbent: float) -> bool:
    """ Indicate whether the cut height ``trial`` is strictly better than ``incumbent``"""
    return trial > incumbent if is_minimization else trial < incumbent


class LevelOneCutOracle:
    r"""Bookkeeping for Level One cut selection

        Saves the cuts and the visited states $\bar{x}_1, \bar{x}_2,\dots$ and maintains, for every cut, the number of visited states at which the cut is the best (highest when minimizing) of all cuts.
        Cuts whose count is zero are dominated at every visited state and are candidates for removal.
        See de Matos, Philpott and Finardi, Improving the performance of Stochastic Dual Dynamic Programming, Journal of Computational and Applied Mathematics 290 (2015) 196–208.
    """
    def __init__(self) -> None:
        self.cuts: list[Cut] = []
        self.states: list[SampledState] = []
        self.sampled_states: set[tuple[tuple[str, float], ...]] = set()

    def add_cut(self, cut: Cut, outgoing_state: dict[str, float], is_minimization: bool) -> None:
        self.cuts.append(cut)
        cut_index = len(self.cuts) - 1

        # Compare the new cut against the incumbents at the previously visited states
        for sampled_state in self.states:
            height = cut.evaluate(sampled_state.state)
            if dominates(is_minimization, height, sampled_state.best_objective):
                self.cuts[sampled_state.best_cut_index].non_dominated_count -= 1
                cut.non_dominated_count += 1
                sampled_state.best_cut_index = cut_index
                sampled_state.best_objective = height

        if not outgoing_state:
            return
        key = _state_key(outgoing_state)
        if key in self.sampled_states:
            return
        self.sampled_states.add(key)

        # Compare all cuts at the new state, starting from the new cut as the incumbent
        sampled_state = SampledState(dict(outgoing_state), cut.evaluate(outgoing_state), cut_index)
        self.states.append(sampled_state)
        cut.non_dominated_count += 1
        for index, stored_cut in enumerate(self.cuts):
            height = stored_cut.evaluate(sampled_state.state)
            if dominates(is_minimization, height, sampled_state.best_objective):
                self.cuts[sampled_state.best_cut_index].non_dominated_count -= 1
                stored_cut.non_dominated_count += 1
                sampled_state.best_cut_index = index
                sampled_state.best_objective = height


class AverageCut(BellmanFunction):
    r"""Bellman function of risk-adjusted average cuts

        Saves a single variable $\theta$ bounded by $[\underline{\theta}, \overline{\theta}]$ at nodes with children and fixed to zero at terminal nodes.
        Provide a finite ``lower_bound`` when minimizing, or a finite ``upper_bound`` when maximizing.
    """
    def __init__(self,
                 lower_bound: float = -math.inf,
                 upper_bound: float = math.inf,
                 cut_improvement_tolerance: float = 0.0,
                 **kwargs: Any) -> None:
        r""" Construct an :class:`AverageCut` template

            Parameters
            ----------
            lower_bound
                Lower bound on the value-to-go; optional, default $-\infty$
            upper_bound
                Upper bound on the value-to-go; optional, default $\infty$
            cut_improvement_tolerance
                If positive, a new cut is installed only if its height at the outgoing state differs from the current objective value of the subproblem by more than this; optional, default ``0.0``

            Raises
            ------
            ConfigurationError
                Raised for unrecognized keywords or a negative ``cut_improvement_tolerance``.
        """
        if kwargs:
            raise ConfigurationError(f"Keywords {sorted(kwargs)} not recognised as arguments to AverageCut.")
        if cut_improvement_tolerance < 0:
            raise ConfigurationError("Cut improvement tolerance must be non-negative.")
        self.lower_bound = float(lower_bound)
        self.upper_bound = float(upper_bound)
        self.cut_improvement_tolerance = float(cut_improvement_tolerance)
        self.variable: Optional[Variable] = None
        self.cuts: list[Cut] = []
        self.oracle = LevelOneCutOracle()

    def __repr__(self) -> str:
        return (f"AverageCut(lower_bound={self.lower_bound}, upper_bound={self.upper_bound}, "
                f"cuts={len(self.cuts)})")

    def initialize(self, policy_graph: PolicyGraph, node: Node) -> AverageCut:
        bellman_function = AverageCut(self.lower_bound, self.upper_bound, self.cut_improvement_tolerance)
        if node.children:
            bellman_function.variable = node.subproblem.add_variable(
                lower_bound=self.lower_bound, upper_bound=self.upper_bound
            )
        else:
            bellman_function.variable = node.subproblem.add_variable(lower_bound=0.0, upper_bound=0.0)
        return bellman_function

    def bellman_term(self) -> Variable:
        return self.variable

    def refine(self,
               policy_graph: PolicyGraph,
               node: Node,
               risk_measure: RiskMeasure,
               outgoing_state: dict[str, float],
               dual_variables: Sequence[dict[str, float]],
               noise_supports: Sequence[Noise],
               original_probability: Sequence[float],
               objective_realizations: Sequence[float]) -> None:
        is_minimization = policy_graph.is_minimization
        names = list(outgoing_state)

        probability = torch.as_tensor(original_probability, dtype=torch.float64)
        objectives = torch.as_tensor(objective_realizations, dtype=torch.float64)
        risk_adjusted_probability = torch.empty_like(probability)
        risk_measure.adjust_probability(risk_adjusted_probability, probability, noise_supports,
                                        objectives, is_minimization)

        duals = torch.tensor([[dual[name] for name in names] for dual in dual_variables],
                             dtype=torch.float64).reshape(len(dual_variables), len(names))
        point = torch.tensor([outgoing_state[name] for name in names], dtype=torch.float64)

        # beta = F[lambda], alpha = F[theta] - beta' x
        coefficients = risk_adjusted_probability @ duals
        current_height = torch.dot(risk_adjusted_probability, objectives).item()
        intercept = current_height - torch.dot(coefficients, point).item()

        cut = Cut(intercept, dict(zip(names, coefficients.tolist())))

        if self.cut_improvement_tolerance > 0.0 and not math.isnan(node.subproblem.objective_value):
            is_improvement = (abs(node.subproblem.objective_value - current_height)
                              > self.cut_improvement_tolerance)
        else:
            is_improvement = True

        if is_improvement:
            self._install(node, cut, is_minimization)

        self.cuts.append(cut)
        self.oracle.add_cut(cut, outgoing_state, is_minimization)

        for stored_cut in self.cuts:
            if stored_cut.removed and stored_cut.non_dominated_count > 0:
                self._install(node, stored_cut, is_minimization)
                stored_cut.removed = False

    def _install(self, node: Node, cut: Cut, is_minimization: bool) -> None:
        expression = self.variable - sum(
            (cut.coefficients[name] * state.out for name, state in node.states.items()), 0.0
        )
        cut.constraint = node.subproblem.add_constraint(
            expression, ">=" if is_minimization else "<=", cut.intercept
        )

    def remove_dominated_cuts(self, node: Node) -> int:
        """ Remove the installed cuts that are not the best cut at any visited state

            Removed cuts stay known to :attr:`oracle` and are reinstalled by :meth:`refine` once they are the best cut at a visited state again.

            Returns
            -------
            int
                The number of cuts removed from the subproblem of ``node``.
        """
        removed = 0
        for cut in self.cuts:
            if cut.non_dominated_count == 0 and cut.constraint is not None:
                node.subproblem.delete_constraint(cut.constraint)
                cut.constraint = None
                cut.removed = True
                removed += 1
        return removed


def _state_key(state: dict[str, float]) -> tuple[tuple[str, float], ...]:
    return tuple(sorted(state.items()))
