r""" Linear programming subproblems

    Provides :class:`Subproblem`, an incrementally assembled linear program
    $$\min_x \text{ or } \max_x\; c'x + c_0 \quad\text{s.t.}\quad a_r'x \;\{\leq, \geq, =\}\; b_r,\quad l\leq x\leq u$$
    solved with the HiGHS backend of :func:`scipy.optimize.linprog`.

    Fixed variables are represented by equality rows $x_i = v_i$ (rather than by collapsed bounds) so that the duals
    $$\lambda_i = \frac{\partial}{\partial v_i}\,\mathrm{OPT}(v)$$
    are available after a solve.
    The sign of $\lambda_i$ does not depend on the objective sense.
"""
from __future__ import annotations

import enum
import logging
import math
from collections.abc import Hashable
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Optional, Union

import numpy as np
from scipy.optimize import linprog


logger = logging.getLogger(__name__)


class SolveStatus(enum.Enum):
    NOT_CALLED = "not_called"
    OPTIMAL = "optimal"
    INFEASIBLE = "infeasible"
    UNBOUNDED = "unbounded"
    ITERATION_LIMIT = "iteration_limit"
    NUMERICAL_ERROR = "numerical_error"
    FEASIBLE_POINT = "feasible_point"
    NO_SOLUTION = "no_solution"


# scipy.optimize.linprog result codes
_TERMINATION = {
    0: SolveStatus.OPTIMAL,
    1: SolveStatus.ITERATION_LIMIT,
    2: SolveStatus.INFEASIBLE,
    3: SolveStatus.UNBOUNDED,
    4: SolveStatus.NUMERICAL_ERROR,
}

_SENSES = ("<=", ">=", "==")


class Variable:
    """Handle of a decision variable of a :class:`Subproblem`"""
    __slots__ = ("subproblem", "index", "name")

    def __init__(self, subproblem: Subproblem, index: int, name: Optional[str] = None) -> None:
        self.subproblem = subproblem
        self.index = index
        self.name = name

    def __repr__(self) -> str:
        return self.name if self.name is not None else f"_[{self.index}]"

    def _as_expression(self) -> LinearExpression:
        return LinearExpression({self: 1.0})

    def __add__(self, other: Any) -> LinearExpression:
        return self._as_expression() + other

    __radd__ = __add__

    def __sub__(self, other: Any) -> LinearExpression:
        return self._as_expression() - other

    def __rsub__(self, other: Any) -> LinearExpression:
        return other + (-self._as_expression())

    def __neg__(self) -> LinearExpression:
        return -self._as_expression()

    def __mul__(self, other: Any) -> LinearExpression:
        return self._as_expression() * other

    __rmul__ = __mul__

    def __truediv__(self, other: Any) -> LinearExpression:
        return self._as_expression() / other


class LinearExpression:
    r"""Affine expression $\sum_i c_i x_i + c_0$ in :class:`Variable`'s"""
    __slots__ = ("terms", "constant")

    def __init__(self, terms: Optional[dict[Variable, float]] = None, constant: float = 0.0) -> None:
        self.terms = dict(terms) if terms is not None else {}
        self.constant = float(constant)

    @classmethod
    def from_any(cls, value: Any) -> LinearExpression:
        if isinstance(value, LinearExpression):
            return value
        if isinstance(value, Variable):
            return value._as_expression()
        if isinstance(value, Real):
            return cls(constant=float(value))
        raise TypeError(f"Cannot interpret {value!r} as a linear expression.")

    def __repr__(self) -> str:
        parts = [f"{coefficient:g} {variable!r}" for variable, coefficient in self.terms.items()]
        if self.constant or not parts:
            parts.append(f"{self.constant:g}")
        return " + ".join(parts)

    def __add__(self, other: Any) -> LinearExpression:
        other = LinearExpression.from_any(other)
        terms = dict(self.terms)
        for variable, coefficient in other.terms.items():
            terms[variable] = terms.get(variable, 0.0) + coefficient
        return LinearExpression(terms, self.constant + other.constant)

    __radd__ = __add__

    def __sub__(self, other: Any) -> LinearExpression:
        return self + (-LinearExpression.from_any(other))

    def __rsub__(self, other: Any) -> LinearExpression:
        return LinearExpression.from_any(other) - self

    def __neg__(self) -> LinearExpression:
        return self * -1.0

    def __mul__(self, other: Any) -> LinearExpression:
        if not isinstance(other, Real):
            raise TypeError("Expressions can only be scaled by real numbers.")
        return LinearExpression({variable: coefficient * other for variable, coefficient in self.terms.items()},
                                self.constant * other)

    __rmul__ = __mul__

    def __truediv__(self, other: Any) -> LinearExpression:
        return self * (1.0 / other)


@dataclass(eq=False)
class Constraint:
    """Handle of a linear constraint of a :class:`Subproblem`"""
    subproblem: Subproblem
    coefficients: dict[int, float]
    sense: str
    rhs: float
    name: Optional[str] = None
    active: bool = field(default=True)


class Subproblem:
    r"""Linear program with mutable bounds, coefficients and objective

        Named variables (and any other object registered via :meth:`register`) can be looked up as ``subproblem[name]``.
    """
    def __init__(self, name: Optional[Hashable] = None) -> None:
        self.name = name
        self._variables: list[Variable] = []
        self._lower: list[float] = []
        self._upper: list[float] = []
        self._fixed: dict[int, float] = {}
        self._constraints: list[Constraint] = []
        self._objects: dict[str, Any] = {}
        self._sense = "min"
        self._objective = LinearExpression()

        self._termination_status = SolveStatus.NOT_CALLED
        self._primal_status = SolveStatus.NO_SOLUTION
        self._dual_status = SolveStatus.NO_SOLUTION
        self._solution: Optional[np.ndarray] = None
        self._objective_value = math.nan
        self._fixed_duals: dict[int, float] = {}

    def __repr__(self) -> str:
        return (f"Subproblem({self.name!r}, variables={len(self._variables)}, "
                f"constraints={sum(constraint.active for constraint in self._constraints)})")

    def __getitem__(self, name: str) -> Any:
        return self._objects[name]

    def __contains__(self, name: str) -> bool:
        return name in self._objects

    def register(self, name: str, obj: Any) -> None:
        if name in self._objects:
            raise ValueError(f"An object named {name!r} already exists.")
        self._objects[name] = obj

    @property
    def num_variables(self) -> int:
        return len(self._variables)

    @property
    def constraints(self) -> list[Constraint]:
        return [constraint for constraint in self._constraints if constraint.active]

    # Variables and bounds

    def add_variable(self,
                     name: Optional[str] = None,
                     lower_bound: float = -math.inf,
                     upper_bound: float = math.inf) -> Variable:
        variable = Variable(self, len(self._variables), name)
        self._variables.append(variable)
        self._lower.append(float(lower_bound))
        self._upper.append(float(upper_bound))
        if name is not None:
            self.register(name, variable)
        return variable

    def _check(self, variable: Variable) -> int:
        if variable.subproblem is not self:
            raise ValueError(f"Variable {variable!r} belongs to a different subproblem.")
        return variable.index

    def lower_bound(self, variable: Variable) -> float:
        return self._lower[self._check(variable)]

    def upper_bound(self, variable: Variable) -> float:
        return self._upper[self._check(variable)]

    def set_lower_bound(self, variable: Variable, value: float) -> None:
        self._lower[self._check(variable)] = float(value)

    def set_upper_bound(self, variable: Variable, value: float) -> None:
        self._upper[self._check(variable)] = float(value)

    def fix(self, variable: Variable, value: float) -> None:
        self._fixed[self._check(variable)] = float(value)

    def unfix(self, variable: Variable) -> None:
        self._fixed.pop(self._check(variable), None)

    def is_fixed(self, variable: Variable) -> bool:
        return self._check(variable) in self._fixed

    # Constraints

    def add_constraint(self, lhs: Any, sense: str, rhs: Any = 0.0, name: Optional[str] = None) -> Constraint:
        r"""Add the constraint ``lhs sense rhs`` with ``sense`` one of ``"<="``, ``">="``, ``"=="``

            Constants on either side are collected on the right hand side.
        """
        if sense not in _SENSES:
            raise ValueError(f"Constraint sense must be one of {_SENSES}, got {sense!r}.")
        expression = LinearExpression.from_any(lhs) - LinearExpression.from_any(rhs)
        coefficients = {self._check(variable): coefficient
                        for variable, coefficient in expression.terms.items()}
        constraint = Constraint(self, coefficients, sense, -expression.constant, name)
        self._constraints.append(constraint)
        if name is not None:
            self.register(name, constraint)
        return constraint

    def set_coefficient(self, constraint: Constraint, variable: Variable, value: float) -> None:
        constraint.coefficients[self._check(variable)] = float(value)

    def set_rhs(self, constraint: Constraint, value: float) -> None:
        constraint.rhs = float(value)

    def delete_constraint(self, constraint: Constraint) -> None:
        constraint.active = False

    # Objective

    def set_objective(self, sense: str, expression: Any) -> None:
        if sense not in ("min", "max"):
            raise ValueError(f"Objective sense must be 'min' or 'max', got {sense!r}.")
        self._sense = sense
        self._objective = LinearExpression.from_any(expression)

    @property
    def objective_sense(self) -> str:
        return self._sense

    # Solve

    def optimize(self) -> None:
        """ Solve the linear program, recording statuses, primal values and duals of the fixing rows"""
        num = len(self._variables)
        sign = 1.0 if self._sense == "min" else -1.0

        c = np.zeros(num)
        for variable, coefficient in self._objective.terms.items():
            c[variable.index] += sign * coefficient

        rows_ub, b_ub, rows_eq, b_eq = [], [], [], []
        for constraint in self.constraints:
            row = np.zeros(num)
            for index, coefficient in constraint.coefficients.items():
                row[index] = coefficient
            if constraint.sense == "<=":
                rows_ub.append(row)
                b_ub.append(constraint.rhs)
            elif constraint.sense == ">=":
                rows_ub.append(-row)
                b_ub.append(-constraint.rhs)
            else:
                rows_eq.append(row)
                b_eq.append(constraint.rhs)

        fixed_rows = {}
        for index, value in self._fixed.items():
            row = np.zeros(num)
            row[index] = 1.0
            fixed_rows[index] = len(rows_eq)
            rows_eq.append(row)
            b_eq.append(value)

        bounds = [
            (None, None) if index in self._fixed else (_finite(lower), _finite(upper))
            for index, (lower, upper) in enumerate(zip(self._lower, self._upper))
        ]

        result = linprog(
            c,
            A_ub=np.array(rows_ub) if rows_ub else None,
            b_ub=np.array(b_ub) if b_ub else None,
            A_eq=np.array(rows_eq) if rows_eq else None,
            b_eq=np.array(b_eq) if b_eq else None,
            bounds=bounds,
            method="highs",
        )

        self._termination_status = _TERMINATION.get(result.status, SolveStatus.NUMERICAL_ERROR)
        self._fixed_duals = {}
        if result.status == 0 and result.x is not None:
            self._solution = np.asarray(result.x)
            self._objective_value = sign * result.fun + self._objective.constant
            self._primal_status = SolveStatus.FEASIBLE_POINT
            marginals = getattr(getattr(result, "eqlin", None), "marginals", None)
            if marginals is not None:
                self._fixed_duals = {index: sign * float(marginals[row]) for index, row in fixed_rows.items()}
                self._dual_status = SolveStatus.FEASIBLE_POINT
            else:
                self._dual_status = SolveStatus.NO_SOLUTION if fixed_rows else SolveStatus.FEASIBLE_POINT
        else:
            self._solution = None
            self._objective_value = math.nan
            self._primal_status = SolveStatus.NO_SOLUTION
            self._dual_status = SolveStatus.NO_SOLUTION
            logger.debug("Subproblem %r terminated with status %s: %s",
                         self.name, self._termination_status.value, result.message)

    @property
    def termination_status(self) -> SolveStatus:
        return self._termination_status

    @property
    def primal_status(self) -> SolveStatus:
        return self._primal_status

    @property
    def dual_status(self) -> SolveStatus:
        return self._dual_status

    @property
    def objective_value(self) -> float:
        return self._objective_value

    def value(self, item: Union[Variable, LinearExpression, Real, Any]) -> Any:
        """ Return the primal value of a :class:`Variable`, a :class:`LinearExpression`, a constant or an object with ``in_`` and ``out`` variables"""
        if self._solution is None:
            raise RuntimeError(f"Subproblem {self.name!r} has no primal solution.")
        if hasattr(item, "in_") and hasattr(item, "out"):
            return type(item)(self.value(item.in_), self.value(item.out))
        expression = LinearExpression.from_any(item)
        return expression.constant + sum(
            coefficient * float(self._solution[self._check(variable)])
            for variable, coefficient in expression.terms.items()
        )

    def fixed_dual(self, variable: Variable) -> float:
        r"""Return the derivative of the optimal objective value with respect to the value ``variable`` is fixed to"""
        try:
            return self._fixed_duals[self._check(variable)]
        except KeyError:
            raise RuntimeError(f"No dual available for variable {variable!r}; is it fixed and the subproblem solved?") from None


def _finite(bound: float) -> Optional[float]:
    return None if math.isinf(bound) else bound
