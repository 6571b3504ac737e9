# -*- coding: utf-8 -*-
"""
Mixed-effects models for the honeydew analysis.

Bee counts:    Bee_Count ~ Mold * Insecticide + Sugar * Paint
               + (1 | Plant_Code:Site) + (1 | min_day:julDate)
Branch temps:  BranchTempC ~ Black * julDate + (1 | Plant_Code:Site)

The bee count model is an overdispersed Poisson GLMM (an observation-level
random intercept gives Poisson-lognormal counts). Variance components come
from a variational Bayes fit with a diffuse prior on the fixed effects. Given
those components, the fixed effects and random-effect modes are found by
penalised IRLS, and the Laplace approximation at that mode gives the
fixed-effect covariance of the multivariate normal posterior. Branch
temperatures use a linear mixed model fitted by REML.

Type-III F tests are Wald tests referred to F(q, n - p). car::Anova on an
lmer fit uses Kenward-Roger denominator df instead, which are smaller when
there are few plants, so p-values here can be somewhat anti-conservative.
"""

import re

import numpy as np
import pandas as pd
from scipy import sparse, stats
import statsmodels.formula.api as smf
from statsmodels.genmod.bayes_mixed_glm import PoissonBayesMixedGLM

BEE_COUNT_FORMULA = 'Bee_Count ~ Mold * Insecticide + Sugar * Paint'
BEE_COUNT_VC = {
    'plant_site': '0 + C(plant_site)',
    'day_date': '0 + C(day_date)',
}
OVERDISPERSION_VC = {'obs_id': '0 + C(obs_id)'}

BRANCH_TEMP_FORMULA = 'BranchTempC ~ C(Black) * julDate'
BRANCH_TEMP_GROUPS = 'plant_site'

# Candidate fixed-effect structures for AIC/BIC comparison
COUNT_CANDIDATES = {
    'interaction': BEE_COUNT_FORMULA,
    'additive': 'Bee_Count ~ Mold + Insecticide + Sugar + Paint',
    'mold_arm': 'Bee_Count ~ Mold * Insecticide',
    'sugar_arm': 'Bee_Count ~ Sugar * Paint',
    'null': 'Bee_Count ~ 1',
}
TEMP_CANDIDATES = {
    'interaction': BRANCH_TEMP_FORMULA,
    'additive': 'BranchTempC ~ C(Black) + julDate',
    'black': 'BranchTempC ~ C(Black)',
    'date': 'BranchTempC ~ julDate',
    'null': 'BranchTempC ~ 1',
}

# Prior SDs for the variational fit: fixed effects effectively flat,
# log random-effect SDs N(0, 1) as in statsmodels
FE_PRIOR_SD = 100.0
VC_PRIOR_SD = 1.0

# The ELBO optimiser often stops on a precision-loss flag at the optimum
GRADIENT_TOL = 1.0
NEWTON_TOL = 1e-10
NEWTON_MAXITER = 100


class ConvergenceError(RuntimeError):
    """A model fit did not converge."""


def fixed_effects(names, beta, cov, nobs, result=None):
    """Bundle point estimates and covariance of the fixed effects."""
    beta = np.asarray(beta, dtype=float)
    cov = np.asarray(cov, dtype=float)
    return {
        'names': list(names),
        'beta': beta,
        'cov': cov,
        'se': np.sqrt(np.diag(cov)),
        'nobs': int(nobs),
        'df_resid': int(nobs) - len(beta),
        'result': result,
    }


def check_vb(result):
    """Reject a variational fit whose variance components are unusable.

    Only the fixed-effect and variance-parameter means enter the gradient
    check; the random-effect means are re-estimated afterwards.
    """
    if not np.all(np.isfinite(result.vcp_mean)):
        raise ConvergenceError('Bee count GLMM variance components are not finite')
    retvals = result.optim_retvals
    if not retvals.success:
        k = len(result.fe_mean) + len(result.vcp_mean)
        jac = np.asarray(retvals.jac, dtype=float)[:k]
        grad_norm = float(np.sqrt(np.sum(jac ** 2)))
        if not np.isfinite(grad_norm) or grad_norm > GRADIENT_TOL:
            raise ConvergenceError(
                f"Bee count GLMM did not converge: {retvals.message} (|gradient|={grad_norm:.4g})")


def poisson_conditional_mode(exog, exog_vc, endog, vc_sd, start, maxiter=NEWTON_MAXITER):
    """Penalised IRLS for a Poisson GLMM with the random-effect SDs held fixed.

    Random effects are scaled to unit variance (u = sd * b, b ~ N(0, 1)), so
    the penalty is 0.5 * b'b and a small SD cannot make the problem singular.
    Returns the stacked mode [beta, b] and the inverse Hessian of the
    negative log joint density at that mode.
    """
    design = np.hstack([exog, exog_vc * vc_sd])
    penalty = np.r_[np.zeros(exog.shape[1]), np.ones(exog_vc.shape[1])]

    def objective(theta):
        eta = design @ theta
        return float(np.sum(np.exp(eta) - endog * eta) + 0.5 * np.sum(penalty * theta ** 2))

    def hessian(theta):
        mu = np.exp(design @ theta)
        return design.T @ (design * mu[:, None]) + np.diag(penalty)

    theta = np.asarray(start, dtype=float)
    current = objective(theta)
    for _ in range(maxiter):
        mu = np.exp(design @ theta)
        grad = design.T @ (mu - endog) + penalty * theta
        step = np.linalg.solve(hessian(theta), grad)
        # Newton decrement
        if grad @ step / 2 < NEWTON_TOL:
            return theta, np.linalg.inv(hessian(theta))
        scale = 1.0
        while scale > 1e-12:
            candidate = theta - scale * step
            value = objective(candidate)
            if np.isfinite(value) and value < current:
                break
            scale /= 2
        else:
            raise ConvergenceError('Bee count GLMM: line search failed to reduce the objective')
        theta, current = candidate, value
    raise ConvergenceError(f"Bee count GLMM: penalised IRLS did not converge in {maxiter} iterations")


def fit_bee_count_glmm(bees, overdispersion=True, fe_prior_sd=FE_PRIOR_SD, vc_prior_sd=VC_PRIOR_SD,
                       maxiter=NEWTON_MAXITER):
    vc_formulas = dict(BEE_COUNT_VC)
    if overdispersion:
        vc_formulas.update(OVERDISPERSION_VC)
    model = PoissonBayesMixedGLM.from_formula(
        BEE_COUNT_FORMULA, vc_formulas, bees, vcp_p=vc_prior_sd, fe_p=fe_prior_sd)

    # Fixed starting values keep the variational fit reproducible
    n_par = model.k_fep + model.k_vcp + model.k_vc
    result = model.fit_vb(mean=np.zeros(n_par), sd=np.full(n_par, np.exp(-0.5)))
    check_vb(result)

    sd = np.exp(result.vcp_mean)
    col_sd = sd[np.asarray(model.ident)]
    exog_vc = model.exog_vc.toarray() if sparse.issparse(model.exog_vc) else np.asarray(model.exog_vc)
    start = np.r_[result.fe_mean, result.vc_mean / col_sd]
    theta, inv_hess = poisson_conditional_mode(
        np.asarray(model.exog, dtype=float), exog_vc, np.asarray(model.endog, dtype=float),
        col_sd, start, maxiter=maxiter)

    k = model.k_fep
    cov = inv_hess[:k, :k]
    cov = (cov + cov.T) / 2
    fixed = fixed_effects(model.fep_names, theta[:k], cov, len(bees), result)
    fixed['vc_sd'] = dict(zip(model.vcp_names, sd))
    return fixed


def fit_branch_temp_lmm(temps, reml=True, formula=BRANCH_TEMP_FORMULA):
    result = smf.mixedlm(formula, temps, groups=BRANCH_TEMP_GROUPS).fit(reml=reml)
    if not result.converged:
        raise ConvergenceError(f"Branch temperature LMM did not converge ({formula})")
    k = result.model.k_fe
    cov = np.asarray(result.cov_params())[:k, :k]
    return fixed_effects(result.fe_params.index, result.fe_params.values, cov, result.nobs, result)


def linear_contrast(fixed, weights):
    """Wald z-test of sum(w * beta) for weights keyed by coefficient name."""
    names = fixed['names']
    unknown = set(weights) - set(names)
    if unknown:
        raise KeyError(f"Unknown coefficients: {sorted(unknown)}")
    L = np.array([weights.get(name, 0.0) for name in names], dtype=float)
    estimate = float(L @ fixed['beta'])
    se = float(np.sqrt(L @ fixed['cov'] @ L))
    z = estimate / se
    return {'estimate': estimate, 'std_error': se, 'z': z, 'p_value': float(2 * stats.norm.sf(abs(z)))}


def blackening_at_date(fixed, jul_date):
    """Blackening effect on branch temperature at a given Julian date."""
    return linear_contrast(fixed, {'C(Black)[T.1]': 1.0, 'C(Black)[T.1]:julDate': float(jul_date)})


def coefficient_table(fixed):
    beta, se = fixed['beta'], fixed['se']
    z = beta / se
    return pd.DataFrame({
        'term': fixed['names'],
        'estimate': beta,
        'std_error': se,
        'z': z,
        'p_value': 2 * stats.norm.sf(np.abs(z)),
    })


def term_name(column):
    # 'C(Black)[T.1]:julDate' -> 'C(Black):julDate'
    return re.sub(r'\[[^\]]*\]', '', column)


def type3_anova(fixed, test='F'):
    """Type-III Wald tests, one row per fixed-effect term.

    Each term is tested with every other term kept in the model. With
    test='F' the Wald statistic is divided by its numerator df and referred to
    an F distribution on the residual df n - p (not the Kenward-Roger df
    that car uses for lmer fits); test='Chisq' keeps the chi-square form.
    """
    if test not in ('F', 'Chisq'):
        raise ValueError(f"Unknown test statistic: {test}")

    names, beta, cov = fixed['names'], fixed['beta'], fixed['cov']
    terms = []
    for col in names:
        term = term_name(col)
        if term != 'Intercept' and term not in terms:
            terms.append(term)

    rows = []
    for term in terms:
        idx = [i for i, col in enumerate(names) if term_name(col) == term]
        b = beta[idx]
        wald = float(b @ np.linalg.solve(cov[np.ix_(idx, idx)], b))
        q = len(idx)
        if test == 'F':
            stat = wald / q
            p = stats.f.sf(stat, q, fixed['df_resid'])
            den_df = fixed['df_resid']
        else:
            stat = wald
            p = stats.chi2.sf(stat, q)
            den_df = np.nan
        rows.append({
            'term': term,
            'estimate': b[0] if q == 1 else np.nan,
            'num_df': q,
            'den_df': den_df,
            'statistic': stat,
            'p_value': p,
            'test': test,
        })
    return pd.DataFrame(rows)


def _check_mle(result, name):
    if not result.mle_retvals.get('converged', True):
        raise ConvergenceError(f"Candidate model '{name}' did not converge")


def fit_count_candidates(bees, candidates=COUNT_CANDIDATES):
    """Negative-binomial and Poisson GLMs for each candidate formula."""
    fits = {}
    for name, formula in candidates.items():
        nb = smf.negativebinomial(formula, bees).fit(method='newton', maxiter=100, disp=0)
        _check_mle(nb, f'negbin:{name}')
        fits[f'negbin:{name}'] = nb

        pois = smf.poisson(formula, bees).fit(method='newton', maxiter=100, disp=0)
        _check_mle(pois, f'poisson:{name}')
        fits[f'poisson:{name}'] = pois
    return fits


def fit_temp_candidates(temps, candidates=TEMP_CANDIDATES):
    """ML (not REML) fits so that AIC/BIC are comparable across fixed effects."""
    fits = {}
    for name, formula in candidates.items():
        fits[name] = fit_branch_temp_lmm(temps, reml=False, formula=formula)['result']
    return fits


def param_count(result):
    # Recovered from the library's own AIC so every parameter it counts is kept
    return int(round((result.aic + 2 * result.llf) / 2))


def compare_models(fits):
    rows = []
    for name, res in fits.items():
        rows.append({
            'model': name,
            'llf': res.llf,
            'k': param_count(res),
            'aic': res.aic,
            'bic': res.bic,
        })
    table = pd.DataFrame(rows).sort_values('aic').reset_index(drop=True)
    table['delta_aic'] = table['aic'] - table['aic'].min()
    rel = np.exp(-0.5 * table['delta_aic'])
    table['aic_weight'] = rel / rel.sum()
    return table


def likelihood_ratio_test(restricted, full):
    stat = max(2 * (full.llf - restricted.llf), 0.0)
    df = param_count(full) - param_count(restricted)
    if df <= 0:
        raise ValueError('Full model must have more parameters than the restricted model')
    return {'statistic': stat, 'df': df, 'p_value': float(stats.chi2.sf(stat, df))}
