r""" Risk measures as changes of probability measure

    A risk measure $\mathbb{F}$ acts on the children-noise outcomes $k$ of a node with original probabilities $p_k$ and objective realizations $f_k$ through a risk-adjusted probability vector $q$,
    $$\mathbb{F}[f] = \sum_k q_k f_k.$$
    Implementations write $q$ into a preallocated tensor; it is non-negative and has the same total mass as $p$ (which is less than one at nodes with a positive probability of termination, e.g. discounted cycles).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import torch

from ml_sddp.errors import ConfigurationError


class RiskMeasure(ABC):
    """Interface of risk measures

        Weighted sums of risk measures produce a :class:`ConvexCombination`:

        >>> measure = 0.5 * Expectation() + 0.5 * WorstCase()
    """
    @abstractmethod
    def adjust_probability(self,
                           risk_adjusted_probability: torch.Tensor,
                           original_probability: torch.Tensor,
                           noise_supports: Sequence[Any],
                           objective_realizations: torch.Tensor,
                           is_minimization: bool) -> None:
        """ Write the risk-adjusted probabilities into ``risk_adjusted_probability``

            Parameters
            ----------
            risk_adjusted_probability
                The tensor to write into, of the same shape as ``original_probability``
            original_probability
                The probabilities $p_k$
            noise_supports
                The noise realizations of the outcomes
            objective_realizations
                The objective values $f_k$
            is_minimization
                Whether large objective values are bad
        """

    def __rmul__(self, weight: float) -> ConvexCombination:
        return ConvexCombination([(weight, self)])

    def __add__(self, other: RiskMeasure) -> ConvexCombination:
        return ConvexCombination(_as_terms(self) + _as_terms(other))


class Expectation(RiskMeasure):
    r"""The expectation $q = p$"""
    def __repr__(self) -> str:
        return "Expectation()"

    def adjust_probability(self, risk_adjusted_probability, original_probability, noise_supports,
                           objective_realizations, is_minimization):
        risk_adjusted_probability.copy_(original_probability)


class WorstCase(RiskMeasure):
    r"""The worst case, placing all mass on the worst outcome of positive probability"""
    def __repr__(self) -> str:
        return "WorstCase()"

    def adjust_probability(self, risk_adjusted_probability, original_probability, noise_supports,
                           objective_realizations, is_minimization):
        risk_adjusted_probability.zero_()
        possible = original_probability > 0
        if not possible.any():
            return
        objectives = objective_realizations.to(torch.float64).clone()
        fill = -torch.inf if is_minimization else torch.inf
        objectives[~possible] = fill
        worst = torch.argmax(objectives) if is_minimization else torch.argmin(objectives)
        risk_adjusted_probability[worst] = original_probability.sum()


class AVaR(RiskMeasure):
    r"""The average value at risk at level $\beta$

        Averages over the worst $\beta$-fraction of outcomes:
        $$\mathrm{AVaR}_\beta[f] = \frac{1}{\beta}\int_0^\beta \mathrm{VaR}_\gamma[f]\,d\gamma.$$
        For $\beta = 1$ this is the expectation; as $\beta\to 0$ it approaches the worst case.
    """
    def __init__(self, beta: float) -> None:
        r""" Construct :class:`AVaR`

            Raises
            ------
            ConfigurationError
                Raised unless $0 < \beta \leq 1$.
        """
        if not 0 < beta <= 1:
            raise ConfigurationError(f"Beta must be in (0, 1]. It is {beta}.")
        self.beta = float(beta)

    def __repr__(self) -> str:
        return f"AVaR({self.beta})"

    def adjust_probability(self, risk_adjusted_probability, original_probability, noise_supports,
                           objective_realizations, is_minimization):
        risk_adjusted_probability.zero_()
        total = original_probability.sum().item()
        if total <= 0:
            return
        order = torch.argsort(objective_realizations, descending=is_minimization, stable=True)
        quantile_collected = 0.0
        for index in order.tolist():
            if quantile_collected >= self.beta:
                break
            probability = original_probability[index].item() / total
            collected = min(probability, self.beta - quantile_collected)
            risk_adjusted_probability[index] = total * collected / self.beta
            quantile_collected += collected


class ConvexCombination(RiskMeasure):
    r"""The convex combination $\sum_m w_m\mathbb{F}_m$ of risk measures"""
    def __init__(self, terms: Sequence[tuple[float, RiskMeasure]]) -> None:
        self.terms = [(float(weight), measure) for weight, measure in terms]
        if any(weight < 0 for weight, _ in self.terms):
            raise ConfigurationError("Weights of a convex combination must be non-negative.")

    def __repr__(self) -> str:
        return " + ".join(f"{weight} * {measure!r}" for weight, measure in self.terms)

    def adjust_probability(self, risk_adjusted_probability, original_probability, noise_supports,
                           objective_realizations, is_minimization):
        risk_adjusted_probability.zero_()
        scratch = torch.empty_like(risk_adjusted_probability)
        for weight, measure in self.terms:
            measure.adjust_probability(scratch, original_probability, noise_supports,
                                       objective_realizations, is_minimization)
            risk_adjusted_probability.add_(scratch, alpha=weight)


class EAVaR(ConvexCombination):
    r"""The combination $\lambda\mathbb{E} + (1 - \lambda)\mathrm{AVaR}_\beta$"""
    def __init__(self, lambda_: float = 1.0, beta: float = 1.0) -> None:
        if not 0 <= lambda_ <= 1:
            raise ConfigurationError(f"Lambda must be in [0, 1]. It is {lambda_}.")
        super().__init__([(lambda_, Expectation()), (1.0 - lambda_, AVaR(beta))])
        self.lambda_ = float(lambda_)
        self.beta = float(beta)

    def __repr__(self) -> str:
        return f"EAVaR(lambda_={self.lambda_}, beta={self.beta})"


def _as_terms(measure: RiskMeasure) -> list[tuple[float, RiskMeasure]]:
    if isinstance(measure, ConvexCombination) and not isinstance(measure, EAVaR):
        return list(measure.terms)
    return [(1.0, measure)]
