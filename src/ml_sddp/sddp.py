r""" Training of policy graphs by stochastic dual dynamic programming

    Each iteration of :func:`train` consists of

    * a *forward pass*, sampling a scenario path $(i_1, \omega_1),\dots, (i_n, \omega_n)$ and solving the subproblems along it to obtain the outgoing states $\bar{x}_1,\dots, \bar{x}_n$ and the realized cumulative objective $\sum_t C_{i_t}(\bar{x}_{t-1}, u_t, \omega_t)$,
    * a *backward pass*, walking the path in reverse and refining, at every visited node $i_t$ with children, the Bellman function at $\bar{x}_t$ by solving all children $j$ for all of their noise terms $\varphi$ with incoming state $\bar{x}_t$,
    * the computation of the *bound*
    $$\mathbb{F}_{j\in\mathrm{root}^+,\ \varphi\in\Omega_j}\left[V_j(x_{\mathrm{root}}, \varphi)\right],$$
    a lower bound on the optimal value when minimizing (upper bound when maximizing).

    The iteration is repeated until one of the stopping rules of :mod:`ml_sddp.plugins.stopping_rules` has converged.
"""
from __future__ import annotations

import logging
import math
import time
import warnings
from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field, fields
from typing import Any, NamedTuple, Optional

import torch

from ml_sddp.base import Node, PolicyGraph
from ml_sddp.belief import build_transition_map
from ml_sddp.errors import ConfigurationError, SubproblemDualInfeasible, SubproblemInfeasible
from ml_sddp.plugins.risk_measures import Expectation, RiskMeasure
from ml_sddp.plugins.sampling_schemes import InSampleMonteCarlo, SamplingScheme
from ml_sddp.plugins.stopping_rules import IterationLimit, StoppingRule, TimeLimit, convergence_test
from ml_sddp.subproblem import LinearExpression, SolveStatus
from ml_sddp.utils._repr import create_log_header, create_log_row
from ml_sddp.utils.timing import Timer


logger = logging.getLogger(__name__)

NodeIndex = Hashable
StateValue = dict[str, float]


class Log(NamedTuple):
    """A record of the training log"""
    iteration: int
    bound: float
    simulation_value: float
    time: float


@dataclass
class TrainingConfig:
    r"""Options of :func:`train`

        Attributes
        ----------
        iteration_limit
            Terminate after this many iterations; optional
        time_limit
            Terminate after this many seconds; optional
        stopping_rules
            Further stopping rules; optional
        risk_measure
            The risk measure at every node as a single :class:`ml_sddp.plugins.risk_measures.RiskMeasure`, a mapping from node indices to risk measures or a callable taking node indices; optional, default :class:`Expectation`
        sampling_scheme
            The sampling scheme of the forward pass; optional, default :class:`InSampleMonteCarlo`
        cycle_discretization_delta
            The distance above which a state arriving at a recurring node is cached as a new starting state; optional, default ``0.0``
        refine_at_similar_nodes
            Whether to refine the Bellman functions of nodes with a subset of the children of the visited node; optional, default ``True``
        print_level
            ``0`` logs only the final status, ``1`` additionally one row per iteration, ``2`` additionally the time spent per section; optional, default ``0``
        seed
            Seed of the random number generator; optional
        timer
            A :class:`ml_sddp.utils.timing.Timer` to record the time spent per section into; optional
    """
    iteration_limit: Optional[int] = None
    time_limit: Optional[float] = None
    stopping_rules: Sequence[StoppingRule] = ()
    risk_measure: Any = field(default_factory=Expectation)
    sampling_scheme: SamplingScheme = field(default_factory=InSampleMonteCarlo)
    cycle_discretization_delta: float = 0.0
    refine_at_similar_nodes: bool = True
    print_level: int = 0
    seed: Optional[int] = None
    timer: Optional[Timer] = None

    def __post_init__(self) -> None:
        if self.iteration_limit is not None and self.iteration_limit < 1:
            raise ConfigurationError(f"iteration_limit must be positive. It is {self.iteration_limit}.")
        if self.time_limit is not None and self.time_limit <= 0:
            raise ConfigurationError(f"time_limit must be positive. It is {self.time_limit}.")
        if self.cycle_discretization_delta < 0:
            raise ConfigurationError("cycle_discretization_delta must be non-negative.")
        if self.print_level < 0:
            raise ConfigurationError("print_level must be non-negative.")
        if not isinstance(self.sampling_scheme, SamplingScheme):
            raise ConfigurationError(f"{self.sampling_scheme!r} is not a sampling scheme.")
        self.stopping_rules = list(self.stopping_rules)
        for stopping_rule in self.stopping_rules:
            if not isinstance(stopping_rule, StoppingRule):
                raise ConfigurationError(f"{stopping_rule!r} is not a stopping rule.")

    @classmethod
    def from_options(cls, **options: Any) -> TrainingConfig:
        """ Construct a :class:`TrainingConfig` from keyword options

            Raises
            ------
            ConfigurationError
                Raised for unrecognized keywords or invalid values.
        """
        unknown = set(options) - {config_field.name for config_field in fields(cls)}
        if unknown:
            raise ConfigurationError(f"Keywords {sorted(unknown)} not recognised as options to train.")
        return cls(**options)

    def all_stopping_rules(self) -> list[StoppingRule]:
        stopping_rules = list(self.stopping_rules)
        if self.iteration_limit is not None:
            stopping_rules.append(IterationLimit(self.iteration_limit))
        if self.time_limit is not None:
            stopping_rules.append(TimeLimit(self.time_limit))
        return stopping_rules


def to_nodal_form(policy_graph: PolicyGraph, element: Any) -> dict[NodeIndex, Any]:
    r"""Return a dictionary with an entry for every node of ``policy_graph``

        ``element`` may be a single object (shared by all nodes), a mapping with a key for every node, or a callable called with every node index.

        Raises
        ------
        ConfigurationError
            Raised if ``element`` is a mapping missing a node.
    """
    if isinstance(element, Mapping):
        for node_index in policy_graph.nodes:
            if node_index not in element:
                raise ConfigurationError(f"Missing key: {node_index!r}.")
        return dict(element)
    if callable(element):
        return {node_index: element(node_index) for node_index in policy_graph.nodes}
    return {node_index: element for node_index in policy_graph.nodes}


def similar_children(policy_graph: PolicyGraph) -> dict[NodeIndex, list[NodeIndex]]:
    """ Return, for every node, the other non-terminal nodes whose children are a subset of its children"""
    children = {node_index: {edge.child for edge in node.children}
                for node_index, node in policy_graph.nodes.items()}
    same_children = {}
    for node_index_1, children_1 in children.items():
        same_children[node_index_1] = [
            node_index_2 for node_index_2, children_2 in children.items()
            if node_index_2 != node_index_1 and children_2 and children_2 <= children_1
        ]
    return same_children


class Options:
    """Storage for the options and cached data of a training run"""
    def __init__(self,
                 policy_graph: PolicyGraph,
                 initial_state: StateValue,
                 sampling_scheme: SamplingScheme,
                 risk_measures: Any,
                 cycle_discretization_delta: float,
                 refine_at_similar_nodes: bool,
                 generator: Optional[torch.Generator] = None,
                 timer: Optional[Timer] = None) -> None:
        self.initial_state = dict(initial_state)
        self.sampling_scheme = sampling_scheme
        self.starting_states: dict[NodeIndex, list[StateValue]] = to_nodal_form(policy_graph, lambda _: [])
        self.risk_measures: dict[NodeIndex, RiskMeasure] = to_nodal_form(policy_graph, risk_measures)
        self.cycle_discretization_delta = cycle_discretization_delta
        self.refine_at_similar_nodes = refine_at_similar_nodes
        self.transition_map = build_transition_map(policy_graph)
        self.similar_children = similar_children(policy_graph)
        self.generator = generator if generator is not None else torch.Generator()
        self.timer = timer if timer is not None else Timer()


# Subproblems

def set_incoming_state(node: Node, state: StateValue) -> None:
    for name, variables in node.states.items():
        node.subproblem.fix(variables.in_, state[name])


def get_outgoing_state(node: Node) -> StateValue:
    """ Return the values of the outgoing state variables of the solved subproblem of ``node``

        Values outside the bounds of the outgoing variables (numerical overshoot) are projected onto the bounds.
    """
    values = {}
    for name, variables in node.states.items():
        value = node.subproblem.value(variables.out)
        value = min(value, node.subproblem.upper_bound(variables.out))
        value = max(value, node.subproblem.lower_bound(variables.out))
        values[name] = value
    return values


def get_dual_variables(node: Node) -> StateValue:
    """ Return the duals on the fixed incoming state variables of the solved subproblem of ``node``"""
    return {name: node.subproblem.fixed_dual(variables.in_) for name, variables in node.states.items()}


def set_objective(policy_graph: PolicyGraph, node: Node) -> None:
    node.stage_objective_set = True
    node.subproblem.set_objective(
        policy_graph.objective_sense,
        LinearExpression.from_any(node.stage_objective) + node.bellman_function.bellman_term()
    )


def solve_subproblem(policy_graph: PolicyGraph,
                     node: Node,
                     state: StateValue,
                     noise: Any,
                     require_duals: bool = True) -> tuple[StateValue, StateValue, float, float]:
    r"""Solve the subproblem of ``node`` with incoming state ``state`` and noise realization ``noise``

        Returns
        -------
        tuple
            The outgoing state, the duals on the incoming state (empty unless ``require_duals``), the stage objective value and the objective value $C_i + \theta$.

        Raises
        ------
        SubproblemInfeasible
            Raised if the solve does not produce a feasible primal point.
        SubproblemDualInfeasible
            Raised if ``require_duals`` and the solve does not produce a feasible dual point.
    """
    set_incoming_state(node, state)
    node.apply_noise(noise)
    # The noise may have changed the stage objective
    if not node.stage_objective_set:
        set_objective(policy_graph, node)
    subproblem = node.subproblem
    subproblem.optimize()

    if subproblem.primal_status != SolveStatus.FEASIBLE_POINT:
        message = (f"Unable to solve node {node.index!r}. "
                   f"Termination status: {subproblem.termination_status.value}, "
                   f"primal status: {subproblem.primal_status.value}, "
                   f"dual status: {subproblem.dual_status.value}.")
        logger.error(message)
        raise SubproblemInfeasible(message, node.index, subproblem.termination_status,
                                   subproblem.primal_status, subproblem.dual_status)

    if require_duals:
        if subproblem.dual_status != SolveStatus.FEASIBLE_POINT:
            message = (f"Unable to solve dual of node {node.index!r}. "
                       f"Dual status: {subproblem.dual_status.value}.")
            logger.error(message)
            raise SubproblemDualInfeasible(message, node.index, subproblem.termination_status,
                                           subproblem.primal_status, subproblem.dual_status)
        duals = get_dual_variables(node)
    else:
        duals = {}

    return get_outgoing_state(node), duals, node.stage_objective_value(), subproblem.objective_value


# Passes

def inf_norm(x: StateValue, y: StateValue) -> float:
    r"""Return $\max_k |x_k - y_k| / (1 + |y_k|)$"""
    return max((abs(x[key] - value) / (1 + abs(value)) for key, value in y.items()), default=0.0)


def distance(starting_states: Sequence[StateValue],
             state: StateValue,
             norm: Callable[[StateValue, StateValue], float] = inf_norm) -> float:
    """ Return the minimum distance between ``state`` and ``starting_states``, infinite if there are none"""
    return min((norm(starting_state, state) for starting_state in starting_states), default=math.inf)


def forward_pass(policy_graph: PolicyGraph, options: Options) -> tuple[list, list[StateValue], float]:
    """ Perform a forward pass

        Returns
        -------
        tuple
            The scenario path, the outgoing states along it and the cumulative stage objective.
    """
    timer = options.timer
    with timer.section("sample_scenario"):
        scenario_path, terminated_due_to_cycle = options.sampling_scheme.sample_scenario(
            policy_graph, options.generator
        )

    sampled_states: list[StateValue] = []
    incoming_state = dict(options.initial_state)
    cumulative_value = 0.0
    for node_index, noise in scenario_path:
        node = policy_graph[node_index]

        starting_states = options.starting_states[node_index]
        if starting_states:
            # Cache the incoming state if far from all cached ones, then restart from a random cached one
            if distance(starting_states, incoming_state) > options.cycle_discretization_delta:
                starting_states.append(incoming_state)
            choice = torch.randint(len(starting_states), (1,), generator=options.generator).item()
            incoming_state = starting_states.pop(choice)

        with timer.section("solve_subproblem"):
            outgoing_state, _, stage_objective, _ = solve_subproblem(
                policy_graph, node, incoming_state, noise, require_duals=False
            )
        cumulative_value += stage_objective
        sampled_states.append(outgoing_state)
        incoming_state = dict(outgoing_state)

    if terminated_due_to_cycle and scenario_path:
        final_node_index = scenario_path[-1][0]
        starting_states = options.starting_states[final_node_index]
        incoming_state = sampled_states[-1]
        if distance(starting_states, incoming_state) > options.cycle_discretization_delta:
            starting_states.append(dict(incoming_state))

    return scenario_path, sampled_states, cumulative_value


def backward_pass(policy_graph: PolicyGraph,
                  options: Options,
                  scenario_path: Sequence[tuple[NodeIndex, Any]],
                  sampled_states: Sequence[StateValue]) -> None:
    """ Perform a backward pass along ``scenario_path``, refining the Bellman functions at ``sampled_states``"""
    for index in reversed(range(len(scenario_path))):
        node_index, _ = scenario_path[index]
        outgoing_state = sampled_states[index]
        node = policy_graph[node_index]
        if not node.children:
            continue

        noise_supports = []
        child_indices = []
        original_probability = []
        dual_variables = []
        objective_realizations = []
        for child, edge_probability in node.children:
            child_node = policy_graph[child]
            for noise in child_node.noise_terms:
                with options.timer.section("solve_subproblem"):
                    _, duals, _, objective = solve_subproblem(policy_graph, child_node, outgoing_state, noise.term)
                dual_variables.append(duals)
                noise_supports.append(noise)
                child_indices.append(child)
                original_probability.append(edge_probability * noise.probability)
                objective_realizations.append(objective)

        node.bellman_function.refine(
            policy_graph, node, options.risk_measures[node_index], outgoing_state,
            dual_variables, noise_supports, original_probability, objective_realizations
        )

        if options.refine_at_similar_nodes:
            for other_index in options.similar_children[node_index]:
                other_node = policy_graph[other_index]
                copied_probability = [
                    options.transition_map.get((other_index, child_index), 0.0) * noise.probability
                    for child_index, noise in zip(child_indices, noise_supports)
                ]
                other_node.bellman_function.refine(
                    policy_graph, other_node, options.risk_measures[other_index], outgoing_state,
                    dual_variables, noise_supports, copied_probability, objective_realizations
                )


def calculate_bound(policy_graph: PolicyGraph,
                    root_state: Optional[StateValue] = None,
                    risk_measure: Optional[RiskMeasure] = None) -> float:
    """ Return the bound of ``policy_graph`` at ``root_state``

        Parameters
        ----------
        policy_graph
            The policy graph
        root_state
            The state at the root node; optional, default :attr:`PolicyGraph.initial_root_state`
        risk_measure
            The risk measure at the root node; optional, default :class:`Expectation`
    """
    if root_state is None:
        root_state = policy_graph.initial_root_state
    if risk_measure is None:
        risk_measure = Expectation()

    noise_supports = []
    probabilities = []
    objectives = []
    for child, edge_probability in policy_graph.root_children:
        node = policy_graph[child]
        for noise in node.noise_terms:
            _, _, _, objective = solve_subproblem(policy_graph, node, root_state, noise.term)
            objectives.append(objective)
            probabilities.append(edge_probability * noise.probability)
            noise_supports.append(noise)

    probabilities = torch.tensor(probabilities, dtype=torch.float64)
    objectives = torch.tensor(objectives, dtype=torch.float64)
    risk_adjusted_probability = torch.empty_like(probabilities)
    risk_measure.adjust_probability(risk_adjusted_probability, probabilities, noise_supports,
                                    objectives, policy_graph.is_minimization)
    return torch.dot(objectives, risk_adjusted_probability).item()


def train(policy_graph: PolicyGraph, **options: Any) -> tuple[str, list[Log]]:
    r"""Train the policy of ``policy_graph``

        Parameters
        ----------
        policy_graph
            The policy graph to train
        **options
            The fields of :class:`TrainingConfig`

        Returns
        -------
        tuple
            The status, one of ``"iteration_limit"``, ``"time_limit"``, ``"interrupted"`` or the status of a custom stopping rule, and the training log.

        Raises
        ------
        ConfigurationError
            Raised for unrecognized or invalid options.
        SubproblemError
            Raised, aborting training, if a subproblem cannot be solved.
    """
    config = TrainingConfig.from_options(**options)
    stopping_rules = config.all_stopping_rules()
    if not stopping_rules:
        warnings.warn("No stopping rule was specified. Training can only be terminated by a keyboard interrupt.")

    timer = config.timer if config.timer is not None else Timer()
    timer.reset()
    generator = torch.Generator()
    if config.seed is not None:
        generator.manual_seed(config.seed)
    else:
        generator.seed()

    training_options = Options(
        policy_graph,
        policy_graph.initial_root_state,
        config.sampling_scheme,
        config.risk_measure,
        config.cycle_discretization_delta,
        config.refine_at_similar_nodes,
        generator,
        timer
    )
    root_risk_measure = config.risk_measure if isinstance(config.risk_measure, RiskMeasure) else Expectation()

    if config.print_level > 0:
        logger.info("SDDP training of a policy graph with %d nodes", len(policy_graph))
        for line in create_log_header():
            logger.info(line)

    # Never seen by the user
    status = "not_solved"
    log: list[Log] = []
    start_time = time.time()
    try:
        iteration = 1
        has_converged = False
        while not has_converged:
            with timer.section("forward_pass"):
                scenario_path, sampled_states, cumulative_value = forward_pass(policy_graph, training_options)
            with timer.section("backward_pass"):
                backward_pass(policy_graph, training_options, scenario_path, sampled_states)
            with timer.section("calculate_bound"):
                bound = calculate_bound(policy_graph, risk_measure=root_risk_measure)
            log.append(Log(iteration, bound, cumulative_value, time.time() - start_time))
            has_converged, status = convergence_test(policy_graph, log, stopping_rules)
            if config.print_level > 0:
                logger.info(create_log_row(*log[-1]))
            iteration += 1
    except KeyboardInterrupt:
        status = "interrupted"

    if config.print_level > 1:
        logger.info("Time spent per section:\n%s", timer.summary())
    logger.info("Training terminated with status %r after %d iterations", status, len(log))
    return status, log


def _simulate(policy_graph: PolicyGraph,
              variables: Sequence[str],
              sampling_scheme: SamplingScheme,
              custom_recorders: Mapping[str, Callable[[Any], Any]],
              generator: torch.Generator) -> list[dict[str, Any]]:
    scenario_path, _ = sampling_scheme.sample_scenario(policy_graph, generator)
    simulation = []
    incoming_state = dict(policy_graph.initial_root_state)
    for node_index, noise in scenario_path:
        node = policy_graph[node_index]
        outgoing_state, _, stage_objective, objective = solve_subproblem(
            policy_graph, node, incoming_state, noise, require_duals=False
        )
        store = {
            "node_index": node_index,
            "noise_term": noise,
            "stage_objective": stage_objective,
            "bellman_term": objective - stage_objective,
        }
        for variable in variables:
            store[variable] = node.subproblem.value(node.subproblem[variable])
        for key, recorder in custom_recorders.items():
            store[key] = recorder(node.subproblem)
        simulation.append(store)
        incoming_state = dict(outgoing_state)
    return simulation


def simulate(policy_graph: PolicyGraph,
             number_replications: int = 1,
             variables: Sequence[str] = (),
             sampling_scheme: Optional[SamplingScheme] = None,
             custom_recorders: Optional[Mapping[str, Callable[[Any], Any]]] = None,
             seed: Optional[int] = None) -> list[list[dict[str, Any]]]:
    r"""Simulate the policy of ``policy_graph``

        Each replication is a list with one dictionary per visited node, containing the keys ``"node_index"``, ``"noise_term"``, ``"stage_objective"`` and ``"bellman_term"`` (the sum of the latter two being the objective value of the solved subproblem), the value of ``subproblem[name]`` for every name in ``variables`` and the value ``recorder(subproblem)`` for every ``key, recorder`` in ``custom_recorders``.

        Example
        -------
        >>> simulations = simulate(policy_graph, 2, ["x"],
        ...                        custom_recorders={"slack": lambda subproblem: subproblem.value(subproblem["s"])})
        >>> outgoing_x = simulations[1][0]["x"].out
    """
    if sampling_scheme is None:
        sampling_scheme = InSampleMonteCarlo()
    if custom_recorders is None:
        custom_recorders = {}
    generator = torch.Generator()
    if seed is not None:
        generator.manual_seed(seed)
    else:
        generator.seed()
    return [_simulate(policy_graph, variables, sampling_scheme, custom_recorders, generator)
            for _ in range(number_replications)]
