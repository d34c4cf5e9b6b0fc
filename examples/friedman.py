"""
Gaussian BART on the Friedman test function, with independent chains run in parallel.
"""
from joblib import Parallel, delayed
import numpy as np
import matplotlib.pyplot as plt
from bayesbart import GaussianBART, sim_friedman, effective_sample_size


def do(X, y, X_test, seed):
    model = GaussianBART(X, y, X_test=X_test, n_trees=200, iters=1500, burnin=500, thinning=2, seed=seed, verbose='v')
    res = model.run()
    return res['sigma'], res['y_hat_test'].mean(axis=0), res['counts'].mean(axis=0)

seed = 34647
rng = np.random.default_rng(seed)
X, y = sim_friedman(500, rng, sigma=1., p=10)
X_test, y_test = sim_friedman(200, rng, sigma=0., p=10)
res = Parallel(-1)(delayed(do)(X, y, X_test, seed+i) for i in range(4))
sigmas, preds, counts = zip(*res)

print('ESS of sigma per chain:', [round(effective_sample_size(s)) for s in sigmas])
rmse = np.sqrt(np.mean((np.mean(preds, axis=0) - y_test)**2))
print(f'Test RMSE: {rmse:.3f}')

fig, ax = plt.subplots(1, 2, figsize=(9, 3))
for s in sigmas:
    ax[0].plot(s)
ax[0].axhline(1, color='black')
ax[0].set_title('sigma')
ax[1].bar(X.columns, np.mean(counts, axis=0))
ax[1].set_title('Splits per variable')
fig.tight_layout()
plt.show()
