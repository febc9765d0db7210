""" Stopping rules for training

    A stopping rule inspects the training log, a sequence of records with fields ``iteration``, ``bound``, ``simulation_value`` and ``time``, and decides whether training terminates.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from ml_sddp.errors import ConfigurationError

if TYPE_CHECKING:
    from ml_sddp.base import PolicyGraph


class StoppingRule(ABC):
    """Interface of stopping rules

        :attr:`status` is reported by :func:`ml_sddp.sddp.train` if the rule terminates training.
    """
    status = "custom"

    @abstractmethod
    def converged(self, policy_graph: PolicyGraph, log: Sequence[Any]) -> bool:
        """ Indicate whether training should terminate given ``log``"""


class IterationLimit(StoppingRule):
    """Terminate after ``limit`` iterations"""
    status = "iteration_limit"

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ConfigurationError(f"The iteration limit must be positive. It is {limit}.")
        self.limit = int(limit)

    def __repr__(self) -> str:
        return f"IterationLimit({self.limit})"

    def converged(self, policy_graph, log):
        return bool(log) and log[-1].iteration >= self.limit


class TimeLimit(StoppingRule):
    """Terminate once ``limit`` seconds have elapsed"""
    status = "time_limit"

    def __init__(self, limit: float) -> None:
        if limit <= 0:
            raise ConfigurationError(f"The time limit must be positive. It is {limit}.")
        self.limit = float(limit)

    def __repr__(self) -> str:
        return f"TimeLimit({self.limit})"

    def converged(self, policy_graph, log):
        return bool(log) and log[-1].time >= self.limit


class BoundStalling(StoppingRule):
    r"""Terminate once the bound moved by at most ``tolerance`` in each of the last ``num_previous_iterations`` iterations"""
    status = "bound_stalling"

    def __init__(self, num_previous_iterations: int, tolerance: float) -> None:
        if num_previous_iterations < 1:
            raise ConfigurationError("The number of previous iterations must be positive.")
        if tolerance < 0:
            raise ConfigurationError("The tolerance must be non-negative.")
        self.num_previous_iterations = int(num_previous_iterations)
        self.tolerance = float(tolerance)

    def __repr__(self) -> str:
        return f"BoundStalling({self.num_previous_iterations}, {self.tolerance})"

    def converged(self, policy_graph, log):
        if len(log) < self.num_previous_iterations + 1:
            return False
        recent = log[-(self.num_previous_iterations + 1):]
        return all(abs(later.bound - earlier.bound) <= self.tolerance
                   for earlier, later in zip(recent[:-1], recent[1:]))


def convergence_test(policy_graph: PolicyGraph,
                     log: Sequence[Any],
                     stopping_rules: Sequence[StoppingRule]) -> tuple[bool, str]:
    """ Return whether any of ``stopping_rules`` has converged and, if so, the status of the first that has"""
    for stopping_rule in stopping_rules:
        if stopping_rule.converged(policy_graph, log):
            return True, stopping_rule.status
    return False, "not_solved"
