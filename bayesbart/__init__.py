"""bayesbart: A Python package for Bayesian Additive Regression Trees.

This package provides classes and functions to fit sum-of-trees models by
Bayesian backfitting MCMC, prepare covariates for them and summarize their
posterior. The package is composed of modules for node data handling, tree
structures, BART sampling, covariate preparation, posterior summaries,
evaluation and utility functions.

Available objects:
  - GaussianBART, NegBinBART
  - Tree
  - Node
  - NodeData, NodeDataGaussian, NodeDataLogLinear
  - Covariate preparation: design matrices, split probabilities, quantile normalization
  - Posterior summaries: additive summaries, level contrasts, negative binomial GLM
  - Utility functions, plotting functions and simulators
  - Evaluation functions
  - Exceptions: InvalidTreeError, AbstractMethodError, InvalidDataError
"""

__version__ = "0.1.0"

from .bart import BART, GaussianBART, NegBinBART
from .tree import Tree
from .node import Node
from .node_data import NodeData, NodeDataGaussian, NodeDataLogLinear
from .exceptions import InvalidTreeError, AbstractMethodError, InvalidDataError
from .prepcovars import (
    build_design_matrix,
    group_split_probs,
    QuantileNormalizer,
    quantile_normalize,
    counterfactual_design,
)
from .summary import (
    AdditiveSummary,
    additive_summary,
    summary_rsq,
    additive_summary_plot,
    level_contrasts,
    long_contrasts,
    fit_glm_nb,
)
from .utils import (
    plot_param_hist,
    plot_trace,
    plot_variable_counts,
    plot_contrasts,
    sim_friedman,
    sim_negbin,
    load_crabs,
)
from .eval import (
    acceptance_rates,
    effective_sample_size,
    posterior_interval,
    summarize_draws,
)
