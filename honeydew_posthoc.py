# -*- coding: utf-8 -*-
"""
Post-hoc treatment comparisons for the bee count model.

Pairwise comparisons are made by Monte Carlo: fixed-effect coefficients are
drawn from their approximate multivariate normal posterior, each draw gives a
linear predictor per treatment, and the difference of two linear predictors is
the log ratio of expected bee counts. Two-sided p-values from the draws are
corrected for the false discovery rate (Benjamini-Hochberg).
"""

from itertools import combinations

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from honeydew_data import CONTROL, TREATMENT_COLS

N_DRAWS = 10000
SEED = 2016
ALPHA = 0.05

# Cohen's d magnitude classes: (upper bound on |d|, label, colour)
EFFECT_CLASSES = [
    (0.5, 'Small', 'gray'),
    (0.8, 'Medium', 'orange'),
    (np.inf, 'Large', 'red'),
]


def treatment_groups(bees):
    """Treatment label -> indicator values, for every combination observed."""
    combos = bees[['treatment'] + TREATMENT_COLS].drop_duplicates('treatment')
    groups = {}
    for _, row in combos.iterrows():
        groups[row['treatment']] = {col: int(row[col]) for col in TREATMENT_COLS}
    # Control first, then a stable order
    ordered = sorted(groups, key=lambda lab: (lab != CONTROL, lab.count('+'), lab))
    return {lab: groups[lab] for lab in ordered}


def treatment_design(names, groups):
    """Design matrix with one row per treatment.

    Interaction columns ('Mold:Insecticide') are products of their indicator
    values; 'Intercept' is 1.
    """
    X = np.zeros((len(groups), len(names)))
    for i, values in enumerate(groups.values()):
        for j, name in enumerate(names):
            if name == 'Intercept':
                X[i, j] = 1.0
                continue
            X[i, j] = np.prod([values[part] for part in name.split(':')])
    return X


def simulate_coefficients(beta, cov, n_draws=N_DRAWS, seed=SEED):
    rng = np.random.default_rng(seed)
    return rng.multivariate_normal(np.asarray(beta, dtype=float), np.asarray(cov, dtype=float), size=n_draws)


def mc_two_sided_p(diff):
    n = len(diff)
    p = 2 * min(np.mean(diff > 0), np.mean(diff < 0))
    return float(min(1.0, max(p, 1.0 / n)))


def pairwise_posthoc(beta, cov, names, groups, n_draws=N_DRAWS, seed=SEED, alpha=ALPHA):
    labels = list(groups)
    if len(labels) < 2:
        raise ValueError('Need at least two treatments for pairwise comparisons')

    X = treatment_design(names, groups)
    eta_hat = X @ np.asarray(beta, dtype=float)
    draws = simulate_coefficients(beta, cov, n_draws=n_draws, seed=seed)
    eta = draws @ X.T

    rows = []
    for a, b in combinations(range(len(labels)), 2):
        diff = eta[:, a] - eta[:, b]
        lo, hi = np.percentile(diff, [100 * alpha / 2, 100 * (1 - alpha / 2)])
        rows.append({
            'treatment_a': labels[a],
            'treatment_b': labels[b],
            'ratio': float(np.exp(eta_hat[a] - eta_hat[b])),
            'ratio_lower': float(np.exp(lo)),
            'ratio_upper': float(np.exp(hi)),
            'p_value': mc_two_sided_p(diff),
        })
    table = pd.DataFrame(rows)

    reject, p_adj, _, _ = multipletests(table['p_value'], alpha=alpha, method='fdr_bh')
    table['p_fdr'] = p_adj
    table['significant'] = reject
    return table


def cohens_d(a, b):
    """Cohen's d with pooled SD; 0.0 when undefined."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    na, nb = len(a), len(b)
    if na < 2 or nb < 2:
        return 0.0
    pooled_sd = np.sqrt(((na - 1) * np.var(a, ddof=1) + (nb - 1) * np.var(b, ddof=1)) / (na + nb - 2))
    if pooled_sd == 0:
        return 0.0
    return float((np.mean(a) - np.mean(b)) / pooled_sd)


def effect_magnitude(d):
    size = abs(d)
    for bound, label, colour in EFFECT_CLASSES:
        if size < bound:
            return label, colour


def effect_sizes_vs_control(bees):
    """Cohen's d of each treatment against Control, with total bee counts."""
    if CONTROL not in set(bees['treatment']):
        raise ValueError('No control plants in the bee count data')
    control = bees.loc[bees['treatment'] == CONTROL, 'Bee_Count']

    rows = []
    for label, grp in bees.groupby('treatment', sort=True):
        if label == CONTROL:
            continue
        d = cohens_d(grp['Bee_Count'], control)
        magnitude, colour = effect_magnitude(d)
        rows.append({
            'treatment': label,
            'cohens_d': d,
            'total_bees': int(grp['Bee_Count'].sum()),
            'n': len(grp),
            'magnitude': magnitude,
            'colour': colour,
        })
    columns = ['treatment', 'cohens_d', 'total_bees', 'n', 'magnitude', 'colour']
    return pd.DataFrame(rows, columns=columns).sort_values('cohens_d').reset_index(drop=True)
