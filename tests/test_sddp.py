"""Tests for the training and simulation of policy graphs."""

import logging

import pytest
import torch

from ml_sddp.base import Noise, PolicyGraph
from ml_sddp.errors import ConfigurationError, SubproblemInfeasible
from ml_sddp.graph import Graph
from ml_sddp.plugins.bellman_functions import AverageCut
from ml_sddp.plugins.risk_measures import Expectation, WorstCase
from ml_sddp.plugins.sampling_schemes import InSampleMonteCarlo, SamplingScheme
from ml_sddp.plugins.stopping_rules import BoundStalling, IterationLimit, StoppingRule, TimeLimit, convergence_test
from ml_sddp.sddp import (
    Log,
    Options,
    TrainingConfig,
    calculate_bound,
    distance,
    forward_pass,
    inf_norm,
    similar_children,
    simulate,
    to_nodal_form,
    train,
)
from ml_sddp.utils.timing import Timer


def maximization_model() -> PolicyGraph:
    def builder(node, stage):
        x = node.add_state("x", initial_value=0.0)
        node.set_stage_objective(x.out)

        @node.parameterize([stage * 1.0, stage * 3.0], [0.5, 0.5])
        def _(noise):
            node.subproblem.set_upper_bound(x.out, noise)

    return PolicyGraph(builder, Graph.linear(2), sense="max", bellman_function=AverageCut(upper_bound=100.0))


def minimization_model() -> PolicyGraph:
    def builder(node, stage):
        x = node.add_state("x", initial_value=0.0, lower_bound=0.0)
        node.set_stage_objective(x.out)

        @node.parameterize([stage * 1.0, stage * 3.0], [0.5, 0.5])
        def _(noise):
            node.subproblem.set_lower_bound(x.out, noise)

    return PolicyGraph(builder, Graph.linear(2), bellman_function=AverageCut(lower_bound=0.0))


def inventory_model(graph: Graph) -> PolicyGraph:
    def builder(node, index):
        stock = node.add_state("stock", initial_value=0.0, lower_bound=0.0, upper_bound=3.0)
        bought = node.subproblem.add_variable("bought", lower_bound=0.0)
        lost = node.subproblem.add_variable("lost", lower_bound=0.0)
        destroyed = node.subproblem.add_variable("destroyed", lower_bound=0.0)
        demand = node.subproblem.add_variable("demand")
        node.subproblem.add_constraint(stock.out, "==", stock.in_ - demand + bought + lost - destroyed)
        node.set_stage_objective(bought + 2 * destroyed + 10 * lost)

        @node.parameterize([1.0, 2.0, 3.0], [0.5, 0.3, 0.2])
        def _(noise):
            node.subproblem.fix(demand, noise)

    return PolicyGraph(builder, graph, bellman_function=AverageCut(lower_bound=0.0))


def make_options(policy_graph: PolicyGraph, seed: int = 0, **kwargs) -> Options:
    config = TrainingConfig(**kwargs)
    return Options(
        policy_graph,
        policy_graph.initial_root_state,
        config.sampling_scheme,
        config.risk_measure,
        config.cycle_discretization_delta,
        config.refine_at_similar_nodes,
        torch.Generator().manual_seed(seed),
    )


class Interrupt(StoppingRule):
    def __init__(self, after: int) -> None:
        self.after = after

    def converged(self, policy_graph, log):
        if len(log) >= self.after:
            raise KeyboardInterrupt
        return False


class Cancelled(SamplingScheme):
    def sample_scenario(self, policy_graph, generator=None):
        raise KeyboardInterrupt


class RecordingExpectation(Expectation):
    def __init__(self) -> None:
        self.noise_supports = []

    def adjust_probability(self, risk_adjusted_probability, original_probability, noise_supports,
                           objective_realizations, is_minimization):
        self.noise_supports.append(list(noise_supports))
        super().adjust_probability(risk_adjusted_probability, original_probability, noise_supports,
                                   objective_realizations, is_minimization)


# ============================================================================
# Configuration
# ============================================================================


def test_config_defaults() -> None:
    """Test the default options."""
    config = TrainingConfig()

    assert isinstance(config.risk_measure, Expectation)
    assert isinstance(config.sampling_scheme, InSampleMonteCarlo)
    assert config.cycle_discretization_delta == 0.0
    assert config.refine_at_similar_nodes is True
    assert config.all_stopping_rules() == []


def test_config_limits_become_stopping_rules() -> None:
    """Test that iteration and time limits are appended to the stopping rules."""
    config = TrainingConfig(iteration_limit=3, time_limit=1.5, stopping_rules=[BoundStalling(2, 0.1)])

    stopping_rules = config.all_stopping_rules()

    assert [type(rule) for rule in stopping_rules] == [BoundStalling, IterationLimit, TimeLimit]


def test_config_unknown_option() -> None:
    """Test that unknown options are rejected."""
    with pytest.raises(ConfigurationError, match="not recognised"):
        train(minimization_model(), iteration_limit=1, iteration_limt=2)


def test_config_invalid_values() -> None:
    """Test that invalid numeric options are rejected."""
    with pytest.raises(ConfigurationError, match="cycle_discretization_delta"):
        TrainingConfig(cycle_discretization_delta=-1.0)
    with pytest.raises(ConfigurationError, match="iteration_limit"):
        TrainingConfig(iteration_limit=0)
    with pytest.raises(ConfigurationError, match="time_limit"):
        TrainingConfig(time_limit=-1.0)
    with pytest.raises(ConfigurationError, match="not a stopping rule"):
        TrainingConfig(stopping_rules=[10])


def test_to_nodal_form() -> None:
    """Test the conversion of per-node options."""
    policy_graph = minimization_model()
    expectation, worst_case = Expectation(), WorstCase()

    assert to_nodal_form(policy_graph, expectation) == {1: expectation, 2: expectation}
    assert to_nodal_form(policy_graph, {1: expectation, 2: worst_case}) == {1: expectation, 2: worst_case}
    assert to_nodal_form(policy_graph, lambda index: index * 10) == {1: 10, 2: 20}
    with pytest.raises(ConfigurationError, match="Missing key"):
        to_nodal_form(policy_graph, {1: expectation})


def test_similar_children() -> None:
    """Test that nodes of the same Markovian stage are similar."""
    policy_graph = inventory_model(Graph.markovian_from_matrix(
        stages=2, transition_matrix=[[0.5, 0.5], [0.5, 0.5]], root_node_transition=[0.5, 0.5]
    ))

    same_children = similar_children(policy_graph)

    assert same_children[(1, 0)] == [(1, 1)]
    assert same_children[(1, 1)] == [(1, 0)]
    assert same_children[(2, 0)] == []


# ============================================================================
# Forward pass
# ============================================================================


def test_forward_pass() -> None:
    """Test that the cumulative value is the sum of the stage objectives."""
    policy_graph = maximization_model()
    options = make_options(policy_graph)

    scenario_path, sampled_states, cumulative_value = forward_pass(policy_graph, options)

    assert [node_index for node_index, _ in scenario_path] == [1, 2]
    for (_, noise), state in zip(scenario_path, sampled_states):
        assert state["x"] == pytest.approx(noise)
    assert cumulative_value == pytest.approx(sum(noise for _, noise in scenario_path))


def test_forward_pass_reproducible() -> None:
    """Test that equal seeds give equal forward passes."""
    results = []
    for _ in range(2):
        policy_graph = maximization_model()
        options = make_options(policy_graph, seed=7)
        results.append([forward_pass(policy_graph, options) for _ in range(5)])

    assert results[0] == results[1]


def test_distance() -> None:
    """Test the relative distance between states."""
    assert inf_norm({"x": 3.0, "y": 0.0}, {"x": 1.0, "y": 0.5}) == pytest.approx(1.0)
    assert distance([], {"x": 1.0}) == float("inf")
    assert distance([{"x": 3.0}, {"x": 1.5}], {"x": 1.0}) == pytest.approx(0.25)


def test_forward_pass_caches_starting_states() -> None:
    """Test that walks cut off on a cycle cache the final state."""
    policy_graph = inventory_model(Graph.from_edges(0, [1], [(0, 1, 1.0), (1, 1, 1.0)]))
    options = make_options(policy_graph, sampling_scheme=InSampleMonteCarlo(max_depth=3))

    _, sampled_states, _ = forward_pass(policy_graph, options)

    assert options.starting_states[1] == [sampled_states[-1]]

    # The next walk starts from the cached state
    forward_pass(policy_graph, options)
    assert len(options.starting_states[1]) >= 1


# ============================================================================
# Training
# ============================================================================


def test_train_iteration_limit() -> None:
    """Test that training stops after exactly the iteration limit."""
    policy_graph = minimization_model()

    status, log = train(policy_graph, iteration_limit=4, seed=1)

    assert status == "iteration_limit"
    assert [record.iteration for record in log] == [1, 2, 3, 4]
    assert all(isinstance(record, Log) for record in log)
    assert all(earlier.time <= later.time for earlier, later in zip(log[:-1], log[1:]))
    # E[x_1] + E[x_2] = 2 + 4
    assert log[-1].bound == pytest.approx(6.0)
    assert calculate_bound(policy_graph) == pytest.approx(6.0)
    assert calculate_bound(policy_graph, risk_measure=WorstCase()) == pytest.approx(7.0)


def test_train_maximization_bound() -> None:
    """Test the upper bound when maximizing."""
    policy_graph = maximization_model()

    status, log = train(policy_graph, iteration_limit=3, seed=2)

    assert status == "iteration_limit"
    assert log[-1].bound == pytest.approx(6.0)


def test_train_custom_stopping_rule() -> None:
    """Test that custom stopping rules report their status."""
    class AfterTwo(StoppingRule):
        def converged(self, policy_graph, log):
            return len(log) >= 2

    status, log = train(minimization_model(), stopping_rules=[AfterTwo()], iteration_limit=10)

    assert status == "custom"
    assert len(log) == 2


def test_train_interrupted() -> None:
    """Test that interrupts return the log so far."""
    status, log = train(minimization_model(), stopping_rules=[Interrupt(after=2)])

    assert status == "interrupted"
    assert len(log) == 2


def test_train_without_stopping_rules_warns() -> None:
    """Test that training without stopping rules warns."""
    with pytest.warns(UserWarning, match="No stopping rule"):
        status, log = train(minimization_model(), sampling_scheme=Cancelled())

    assert status == "interrupted"
    assert log == []


def test_train_infeasible_subproblem() -> None:
    """Test that solve failures abort training with the node attached."""
    def builder(node, stage):
        x = node.add_state("x", initial_value=0.0, lower_bound=0.0)
        node.subproblem.add_constraint(x.out, "<=", -1.0)
        node.set_stage_objective(x.out)

    policy_graph = PolicyGraph(builder, Graph.linear(2), bellman_function=AverageCut(lower_bound=0.0))

    with pytest.raises(SubproblemInfeasible, match="Unable to solve node 1") as excinfo:
        train(policy_graph, iteration_limit=2)
    assert excinfo.value.node_index == 1


def test_train_risk_averse() -> None:
    """Test that a worst-case risk measure gives the worst-case bound."""
    policy_graph = minimization_model()

    train(policy_graph, iteration_limit=3, risk_measure=WorstCase(), seed=3)

    # E[x_1] + max x_2
    assert calculate_bound(policy_graph) == pytest.approx(8.0)


def test_train_markovian_refines_similar_nodes() -> None:
    """Test that nodes of the same stage share cuts."""
    policy_graph = inventory_model(Graph.markovian_from_matrix(
        stages=2, transition_matrix=[[0.5, 0.5], [0.5, 0.5]], root_node_transition=[0.5, 0.5]
    ))

    train(policy_graph, iteration_limit=2, seed=4)

    assert len(policy_graph[(1, 0)].bellman_function.cuts) == 2
    assert len(policy_graph[(1, 1)].bellman_function.cuts) == 2


def test_train_markovian_without_similar_nodes() -> None:
    """Test that only visited nodes are refined when cut sharing is off."""
    policy_graph = inventory_model(Graph.markovian_from_matrix(
        stages=2, transition_matrix=[[0.5, 0.5], [0.5, 0.5]], root_node_transition=[0.5, 0.5]
    ))

    train(policy_graph, iteration_limit=2, refine_at_similar_nodes=False, seed=4)

    cut_counts = [len(policy_graph[(1, markov_state)].bellman_function.cuts) for markov_state in (0, 1)]
    assert sum(cut_counts) == 2


def test_train_time_limit() -> None:
    """Test that training stops once the time limit is reached."""
    status, log = train(minimization_model(), time_limit=0.2, seed=7)

    assert status == "time_limit"
    assert log[-1].time >= 0.2
    assert all(record.time < 0.2 for record in log[:-1])


def test_noise_supports_passed_to_risk_measures() -> None:
    """Test that risk measures receive noise terms with their probabilities."""
    policy_graph = minimization_model()
    risk_measure = RecordingExpectation()

    train(policy_graph, iteration_limit=1, risk_measure=risk_measure, seed=8)
    calculate_bound(policy_graph, risk_measure=risk_measure)

    assert risk_measure.noise_supports
    for noise_supports in risk_measure.noise_supports:
        assert all(isinstance(noise, Noise) for noise in noise_supports)
    assert [noise.term for noise in risk_measure.noise_supports[-1]] == [1.0, 3.0]


def test_train_infinite_horizon() -> None:
    """Test training on a discounted cycle with a belief partition."""
    graph = Graph.from_edges(
        "root",
        ["A", "B"],
        [("root", "A", 0.5), ("root", "B", 0.5), ("A", "A", 0.9), ("B", "B", 0.9)],
        belief_partition=[["A", "B"]],
    )
    policy_graph = inventory_model(graph)

    status, log = train(
        policy_graph,
        iteration_limit=5,
        sampling_scheme=InSampleMonteCarlo(max_depth=4),
        cycle_discretization_delta=0.1,
        seed=5,
    )

    assert status == "iteration_limit"
    assert all(later.bound >= earlier.bound - 1e-6 for earlier, later in zip(log[:-1], log[1:]))


def test_train_timer_and_logging(caplog) -> None:
    """Test the instrumentation and logging of a training run."""
    timer = Timer()
    caplog.set_level(logging.INFO, logger="ml_sddp")

    train(minimization_model(), iteration_limit=2, timer=timer, print_level=2)

    assert timer.counts["forward_pass"] == 2
    assert timer.counts["backward_pass"] == 2
    assert timer.counts["calculate_bound"] == 2
    assert timer.counts["sample_scenario"] == 2
    assert "iteration" in caplog.text
    assert "forward_pass" in caplog.text
    assert "'iteration_limit'" in caplog.text


def test_bound_stalling() -> None:
    """Test convergence once the bound stalls."""
    log = [Log(1, 1.0, 0.0, 0.0), Log(2, 2.0, 0.0, 0.0), Log(3, 2.0, 0.0, 0.0), Log(4, 2.0, 0.0, 0.0)]
    policy_graph = minimization_model()

    assert convergence_test(policy_graph, log, [BoundStalling(2, 1e-6)]) == (True, "bound_stalling")
    assert convergence_test(policy_graph, log, [BoundStalling(3, 1e-6)]) == (False, "not_solved")
    assert convergence_test(policy_graph, log, [IterationLimit(4)]) == (True, "iteration_limit")


# ============================================================================
# Simulation
# ============================================================================


def test_simulate() -> None:
    """Test the records of simulated replications."""
    policy_graph = minimization_model()
    train(policy_graph, iteration_limit=4, seed=6)

    simulations = simulate(
        policy_graph,
        3,
        ["x"],
        custom_recorders={"objective": lambda subproblem: subproblem.objective_value},
        seed=6,
    )

    assert len(simulations) == 3
    for simulation in simulations:
        assert [record["node_index"] for record in simulation] == [1, 2]
        for record in simulation:
            assert record["x"].out == pytest.approx(record["noise_term"])
            assert record["stage_objective"] + record["bellman_term"] == pytest.approx(record["objective"])
        assert simulation[-1]["bellman_term"] == pytest.approx(0.0)


def test_simulate_reproducible() -> None:
    """Test that equal seeds give equal simulations."""
    policy_graph = minimization_model()
    train(policy_graph, iteration_limit=2, seed=0)

    first = simulate(policy_graph, 4, seed=11)
    second = simulate(policy_graph, 4, seed=11)

    assert [[record["noise_term"] for record in simulation] for simulation in first] == \
        [[record["noise_term"] for record in simulation] for simulation in second]
