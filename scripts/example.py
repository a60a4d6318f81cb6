from hierbasis.additive import AdditiveHierBasis
from hierbasis.hier_basis import HierBasis


import numpy as np
import pandas as pd


rng = np.random.default_rng(2024)

# Univariate curve with noise
n = 300
x = rng.uniform(-1, 1, size=n)
y = np.sin(3 * x) + 0.5 * x ** 2 + rng.normal(scale=0.2, size=n)

hb = HierBasis(nbasis=12, nlam=30, lam_min_ratio=1e-4, k=3, verbose=True)
hb.fit(x, y)

summary = hb.path_summary()
print(summary.head(10))

# Pick the lambda with the smallest training error subject to a dof budget
budget = summary[summary["dof"] <= 6]
best = int(budget["train_mse"].idxmin())
print(f"Chosen lambda = {hb.lambdas_[best]:.4g} with {hb.active_[best]} active basis functions")

hb.plot_path([0, best, len(hb.lambdas_) - 1])


# Additive model on three predictors, one of them pure noise
x_mat = rng.uniform(-1, 1, size=(n, 3))
y_add = x_mat[:, 0] ** 2 + np.sin(2 * x_mat[:, 1]) + rng.normal(scale=0.2, size=n)

ahb = AdditiveHierBasis(nbasis=6, nlam=20, lam_min_ratio=1e-2, k=2, verbose=True)
ahb.fit(x_mat, y_add)

pd.set_option("display.width", 120)
print(ahb.path_summary())
