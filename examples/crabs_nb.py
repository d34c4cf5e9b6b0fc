"""
Negative binomial BART on the horseshoe crab satellite data.

Fits the log-linear count model with one split group per original variable,
looks at the overdispersion and at which variables are used, compares with a
negative binomial GLM, then summarizes the fit with additive projections and
colour contrasts.
"""
import numpy as np
import matplotlib.pyplot as plt
from bayesbart import (NegBinBART, build_design_matrix, group_split_probs, QuantileNormalizer,
                       counterfactual_design, additive_summary, additive_summary_plot, summary_rsq,
                       level_contrasts, long_contrasts, fit_glm_nb, load_crabs, plot_param_hist,
                       plot_variable_counts, plot_contrasts, acceptance_rates, summarize_draws)

seed = 1234
rng = np.random.default_rng(seed)
crabs = load_crabs()

X, y, groups = build_design_matrix(crabs, ['color', 'spine', 'width', 'weight'], response='satell', factors=['color', 'spine'])
color_cols = groups['color']
X_test, color_levels = counterfactual_design(X, color_cols)

# the test rows go through the training CDF
qn = QuantileNormalizer().fit(X)
X_qn, X_test_qn = qn.transform(X), qn.transform(X_test)

probs = group_split_probs(X.columns, groups)
n_trees = 50
model = NegBinBART(X_qn, y, X_test=X_test_qn, n_trees=n_trees, scale_lambda=1/np.sqrt(n_trees), scale_lambda_0=1,
                   split_probs=probs, update_s=False, iters=10000, burnin=5000, thinning=1, seed=rng, verbose='v')
fitted_crabs = model.run()
print(acceptance_rates(fitted_crabs))
print(summarize_draws(fitted_crabs))

## Posterior of the overdispersion
plot_param_hist(fitted_crabs, key='k', title='Posterior of Overdispersion Parameter')

## GLM comparison
print(fit_glm_nb('satell ~ C(color) + C(spine) + width + weight', crabs).summary())

## Variable counts
plot_variable_counts(fitted_crabs)

## Assessing size
crabs2 = crabs.assign(r=fitted_crabs['lambda'].mean(axis=0))
full = additive_summary('r ~ C(color) + C(spine) + bs(width, df=4) + bs(weight, df=4)', fitted_crabs['lambda'], crabs2)
drop_weight = additive_summary('r ~ C(color) + C(spine) + bs(width, df=4)', fitted_crabs['lambda'], crabs2)
drop_width = additive_summary('r ~ C(color) + C(spine) + bs(weight, df=4)', fitted_crabs['lambda'], crabs2)
additive_summary_plot(full, title='Full')
additive_summary_plot(drop_weight, title='No weight')
additive_summary_plot(drop_width, title='No width')

drop_both_rsq = summary_rsq('r ~ C(color) * C(spine)', fitted_crabs['lambda'], crabs2)
fig, ax = plt.subplots()
ax.hist(drop_both_rsq, bins=30, edgecolor='white')
ax.set_xlabel('Summary R-Squared, No Size Variables')

## Colour assessment
color_df = level_contrasts(fitted_crabs['lambda_test'], color_levels)
color_long = long_contrasts(color_df, name='color')
print(color_long.groupby('color')['average'].describe())
plot_contrasts(color_df, ylbl='average')
plt.show()
