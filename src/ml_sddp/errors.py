""" Exceptions raised by :mod:`ml_sddp`
"""
from __future__ import annotations

from typing import Any, Optional


class SDDPError(Exception):
    """Base class of all errors raised by :mod:`ml_sddp`"""


class GraphValidationError(SDDPError, ValueError):
    """Raised if edge probabilities or the belief partition of a :class:`ml_sddp.graph.Graph` are malformed"""


class DuplicateNodeError(SDDPError, KeyError):
    """Raised when adding a node that already exists"""


class MissingNodeError(SDDPError, KeyError):
    """Raised when referring to a node that does not exist"""


class WrongEdgeEndpointError(SDDPError, ValueError):
    """Raised when adding an edge that enters the root node"""


class ConfigurationError(SDDPError, ValueError):
    """Raised for unrecognized options or invalid numeric settings"""


class BeliefUpdateError(SDDPError, ZeroDivisionError):
    """Raised if an observation is impossible under the incoming belief"""


class SubproblemError(SDDPError, RuntimeError):
    r"""A subproblem did not reach the required status

        Carries the index of the offending node and the statuses reported by the solver.
    """
    def __init__(self,
                 message: str,
                 node_index: Any = None,
                 termination_status: Optional[Any] = None,
                 primal_status: Optional[Any] = None,
                 dual_status: Optional[Any] = None) -> None:
        super().__init__(message)
        self.node_index = node_index
        self.termination_status = termination_status
        self.primal_status = primal_status
        self.dual_status = dual_status


class SubproblemInfeasible(SubproblemError):
    """Raised if a subproblem solve does not produce a feasible primal point"""


class SubproblemDualInfeasible(SubproblemError):
    """Raised if duals are required but the solve does not produce a feasible dual point"""
