r"""Pluggable Components of the Training Algorithm

The training algorithm of :mod:`ml_sddp.sddp` is configured by four families of interchangeable components:

* *Bellman functions* (:mod:`ml_sddp.plugins.bellman_functions`) approximate the value-to-go $\mathcal{V}_i$ of a node by supporting hyperplanes ("cuts") $\theta \geq \alpha + \beta'x$,
* *risk measures* (:mod:`ml_sddp.plugins.risk_measures`) map the probabilities $p_k$ and objective realizations $f_k$ of the children of a node to risk-adjusted probabilities $q_k$,
* *sampling schemes* (:mod:`ml_sddp.plugins.sampling_schemes`) draw the scenario path traversed on the forward pass,
* *stopping rules* (:mod:`ml_sddp.plugins.stopping_rules`) decide, given the training log, when to terminate.

Each family is an abstract base class with a closed set of named variants selected at configuration time.
"""

from . import bellman_functions, risk_measures, sampling_schemes, stopping_rules
