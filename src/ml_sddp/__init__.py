r"""Stochastic dual dynamic programming on policy graphs

    A multistage stochastic optimization problem within the scope of :mod:`ml_sddp` is represented by a *policy graph*: a directed graph with a root node, transition probabilities $\Phi_{ij}$ on its edges and, at every non-root node $i$, a linear *subproblem*
    $$V_i(x, \omega) = \min_{u,\ x'}\; C_i(x, u, \omega) + \mathcal{V}_i(x')\quad\text{s.t.}\quad (x', u)\in\mathcal{X}_i(x, \omega)$$
    driven by the incoming state $x$ and a discrete noise $\omega\in\Omega_i$.
    The *value-to-go*
    $$\mathcal{V}_i(x') = \mathbb{F}_{j\in i^+,\ \varphi\in\Omega_j}\left[V_j(x', \varphi)\right]$$
    is the (possibly risk-adjusted by $\mathbb{F}$) expectation of the values of the children of $i$.
    The graph may contain cycles, in which case the problem is of infinite horizon and the transition probabilities out of a node sum to less than one.

    :mod:`ml_sddp` approximates the value-to-go functions from below by cutting planes refined along sampled scenario paths (:func:`ml_sddp.sddp.train`), yielding a policy that can be simulated (:func:`ml_sddp.sddp.simulate`).
    Nodes sharing observationally indistinguishable states are grouped by a *belief partition*, over which :class:`ml_sddp.belief.BeliefUpdater` propagates beliefs by Bayes' theorem.
"""

__version__ = "0.1.0a1"

from .graph import Graph
from .base import Node, PolicyGraph, State
from .belief import BeliefUpdater
from .plugins.bellman_functions import AverageCut
from .plugins.risk_measures import AVaR, ConvexCombination, EAVaR, Expectation, WorstCase
from .plugins.sampling_schemes import InSampleMonteCarlo
from .plugins.stopping_rules import BoundStalling, IterationLimit, TimeLimit
from .sddp import calculate_bound, simulate, train
from .utils.timing import Timer
