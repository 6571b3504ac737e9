"""Tests for model fitting, type III tests and model comparison."""

from types import SimpleNamespace

import numpy as np
import pytest
from scipy import stats

import honeydew_models
from honeydew_models import (
    BRANCH_TEMP_FORMULA,
    COUNT_CANDIDATES,
    TEMP_CANDIDATES,
    ConvergenceError,
    _check_mle,
    blackening_at_date,
    check_vb,
    coefficient_table,
    compare_models,
    fit_bee_count_glmm,
    fit_branch_temp_lmm,
    fit_count_candidates,
    fit_temp_candidates,
    fixed_effects,
    likelihood_ratio_test,
    linear_contrast,
    param_count,
    poisson_conditional_mode,
    term_name,
    type3_anova,
)


def _fake_fit(llf, k, nobs=100):
    return SimpleNamespace(llf=llf, aic=-2 * llf + 2 * k, bic=-2 * llf + np.log(nobs) * k)


# ---------------------------------------------------------------------------
# Wald tests on hand-built fixed effects
# ---------------------------------------------------------------------------


class TestTermName:
    def test_plain(self):
        assert term_name('Mold:Insecticide') == 'Mold:Insecticide'

    def test_strips_levels(self):
        assert term_name('C(Black)[T.1]') == 'C(Black)'
        assert term_name('C(Black)[T.1]:julDate') == 'C(Black):julDate'


class TestType3Anova:
    def test_single_df_term(self):
        fixed = fixed_effects(['Intercept', 'x'], [1.0, 2.0], np.diag([1.0, 0.25]), nobs=52)
        table = type3_anova(fixed)
        assert list(table['term']) == ['x']
        row = table.iloc[0]
        assert row['statistic'] == pytest.approx(16.0)
        assert row['num_df'] == 1
        assert row['den_df'] == 50
        assert row['p_value'] == pytest.approx(stats.f.sf(16.0, 1, 50))
        assert row['estimate'] == pytest.approx(2.0)

    def test_multi_level_factor_grouped(self):
        names = ['Intercept', 'C(g)[T.b]', 'C(g)[T.c]', 'z']
        cov = np.diag([1.0, 1.0, 1.0, 1.0])
        fixed = fixed_effects(names, [0.0, 3.0, 4.0, 0.0], cov, nobs=40)
        table = type3_anova(fixed)
        assert list(table['term']) == ['C(g)', 'z']
        g = table.iloc[0]
        assert g['num_df'] == 2
        assert g['statistic'] == pytest.approx(25.0 / 2)
        assert np.isnan(g['estimate'])

    def test_chisq(self):
        fixed = fixed_effects(['Intercept', 'x'], [1.0, 2.0], np.diag([1.0, 1.0]), nobs=30)
        row = type3_anova(fixed, test='Chisq').iloc[0]
        assert row['statistic'] == pytest.approx(4.0)
        assert row['p_value'] == pytest.approx(stats.chi2.sf(4.0, 1))

    def test_unknown_test(self):
        fixed = fixed_effects(['Intercept', 'x'], [1.0, 2.0], np.eye(2), nobs=30)
        with pytest.raises(ValueError):
            type3_anova(fixed, test='LR')


def test_coefficient_table():
    fixed = fixed_effects(['Intercept', 'x'], [0.5, -1.0], np.diag([0.25, 0.25]), nobs=20)
    table = coefficient_table(fixed)
    assert table['z'].tolist() == pytest.approx([1.0, -2.0])
    assert table.loc[1, 'p_value'] == pytest.approx(2 * stats.norm.sf(2.0))


# ---------------------------------------------------------------------------
# Model comparison helpers
# ---------------------------------------------------------------------------


class TestCompareModels:
    def test_sorted_with_weights(self):
        fits = {'a': _fake_fit(-100, 3), 'b': _fake_fit(-90, 5), 'c': _fake_fit(-120, 1)}
        table = compare_models(fits)
        assert list(table['model']) == ['b', 'a', 'c']
        assert table.loc[0, 'delta_aic'] == 0
        assert table['aic_weight'].sum() == pytest.approx(1.0)
        assert table['aic_weight'].is_monotonic_decreasing
        assert list(table['k']) == [5, 3, 1]

    def test_param_count(self):
        assert param_count(_fake_fit(-42.5, 7)) == 7


class TestLikelihoodRatio:
    def test_nested(self):
        result = likelihood_ratio_test(_fake_fit(-110, 2), _fake_fit(-100, 4))
        assert result['statistic'] == pytest.approx(20.0)
        assert result['df'] == 2
        assert result['p_value'] == pytest.approx(stats.chi2.sf(20.0, 2))

    def test_wrong_order_raises(self):
        with pytest.raises(ValueError):
            likelihood_ratio_test(_fake_fit(-100, 4), _fake_fit(-110, 2))


# ---------------------------------------------------------------------------
# Fits on synthetic field data
# ---------------------------------------------------------------------------

class TestLinearContrast:
    def test_weighted_sum(self):
        cov = np.array([[1.0, 0.0, 0.0], [0.0, 0.04, 0.01], [0.0, 0.01, 0.01]])
        fixed = fixed_effects(['Intercept', 'a', 'b'], [0.0, 1.0, 2.0], cov, nobs=30)
        out = linear_contrast(fixed, {'a': 1.0, 'b': 2.0})
        assert out['estimate'] == pytest.approx(5.0)
        assert out['std_error'] == pytest.approx(np.sqrt(0.04 + 4 * 0.01 + 4 * 0.01))
        assert out['p_value'] == pytest.approx(2 * stats.norm.sf(5.0 / out['std_error']))

    def test_unknown_name(self):
        fixed = fixed_effects(['Intercept', 'a'], [0.0, 1.0], np.eye(2), nobs=30)
        with pytest.raises(KeyError):
            linear_contrast(fixed, {'c': 1.0})


def _with_temp_interaction(temps, slope=0.3):
    frame = temps.copy()
    frame['BranchTempC'] = frame['BranchTempC'] + slope * frame['Black'] * (frame['julDate'] - 150)
    return frame


class TestBranchTempLMM:
    def test_formula_uses_raw_date(self):
        assert BRANCH_TEMP_FORMULA == 'BranchTempC ~ C(Black) * julDate'
        assert 'center(' not in ''.join(TEMP_CANDIDATES.values())

    def test_recovers_blackening_effect(self, temps):
        fit = fit_branch_temp_lmm(temps)
        assert fit['cov'].shape == (4, 4)
        assert fit['nobs'] == len(temps)
        at_mean = blackening_at_date(fit, temps['julDate'].mean())
        assert at_mean['estimate'] == pytest.approx(3.0, abs=1.0)
        assert at_mean['p_value'] < 0.05

    def test_type3_terms(self, temps):
        table = type3_anova(fit_branch_temp_lmm(temps))
        assert list(table['term']) == ['C(Black)', 'julDate', 'C(Black):julDate']

    def test_black_term_is_effect_at_day_zero(self, temps):
        # Warming grows 0.3 degC/day on blackened branches from julDate 150
        frame = _with_temp_interaction(temps)
        fit = fit_branch_temp_lmm(frame)
        effects = dict(zip(fit['names'], fit['beta']))
        row = type3_anova(fit).set_index('term').loc['C(Black)']
        assert row['estimate'] == pytest.approx(effects['C(Black)[T.1]'])
        assert row['estimate'] == pytest.approx(blackening_at_date(fit, 0)['estimate'])
        # True value at day zero is 3 - 0.3 * 150 = -42
        assert row['estimate'] < -10
        assert effects['C(Black)[T.1]:julDate'] == pytest.approx(0.3, abs=0.15)
        assert blackening_at_date(fit, 155)['estimate'] == pytest.approx(4.5, abs=1.0)


class TestBeeCountGLMM:
    def test_fixed_effects(self, bees):
        fit = fit_bee_count_glmm(bees, overdispersion=False)
        assert fit['names'] == ['Intercept', 'Mold', 'Insecticide', 'Mold:Insecticide',
                                'Sugar', 'Paint', 'Sugar:Paint']
        effects = dict(zip(fit['names'], fit['beta']))
        assert effects['Mold'] > 0
        assert effects['Sugar'] > 0
        assert set(fit['vc_sd']) == {'plant_site', 'day_date'}

    def test_overdispersed_covariance(self, bees):
        fit = fit_bee_count_glmm(bees)
        cov = fit['cov']
        assert cov.shape == (7, 7)
        assert np.allclose(cov, cov.T)
        assert np.all(np.linalg.eigvalsh(cov) > 0)
        assert np.all(np.isfinite(fit['beta']))
        assert len(fit['result'].model.vcp_names) == 3

    def test_observation_sd_not_collapsed(self, bees):
        # Counts are gamma-Poisson, so the observation-level SD is far from zero
        sd = fit_bee_count_glmm(bees)['vc_sd']
        assert set(sd) == {'plant_site', 'day_date', 'obs_id'}
        assert all(np.isfinite(v) for v in sd.values())
        assert sd['obs_id'] > 0.1


class TestConditionalMode:
    def test_tiny_sd_matches_poisson_glm(self):
        y = np.array([0.0, 2.0, 3.0, 1.0, 4.0, 2.0])
        X = np.ones((6, 1))
        Z = np.kron(np.eye(3), np.ones((2, 1)))
        theta, inv_hess = poisson_conditional_mode(X, Z, y, np.full(3, 1e-8), np.zeros(4))
        assert theta[0] == pytest.approx(np.log(y.mean()), abs=1e-4)
        assert inv_hess[0, 0] == pytest.approx(1 / y.sum(), rel=1e-4)

    def test_group_modes_shrink_toward_data(self):
        y = np.array([0.0, 0.0, 5.0, 6.0, 2.0, 3.0])
        X = np.ones((6, 1))
        Z = np.kron(np.eye(3), np.ones((2, 1)))
        sd = np.full(3, 0.8)
        theta, _ = poisson_conditional_mode(X, Z, y, sd, np.zeros(4))
        u = theta[1:] * sd
        assert u[0] < u[2] < u[1]

    def test_iteration_limit(self):
        y = np.array([1.0, 2.0, 3.0, 4.0])
        with pytest.raises(ConvergenceError):
            poisson_conditional_mode(np.ones((4, 1)), np.eye(4), y, np.ones(4), np.zeros(5), maxiter=0)


# ---------------------------------------------------------------------------
# Convergence failures
# ---------------------------------------------------------------------------


def _vb_result(jac, success=False, vcp_mean=(0.0, -1.0)):
    return SimpleNamespace(
        fe_mean=np.zeros(2),
        vcp_mean=np.asarray(vcp_mean),
        optim_retvals=SimpleNamespace(success=success, message='precision loss', jac=np.asarray(jac)),
    )


class TestConvergenceErrors:
    def test_vb_large_gradient(self):
        with pytest.raises(ConvergenceError):
            check_vb(_vb_result([1e6, 0.0, 0.0, 0.0, 0.0, 0.0]))

    def test_vb_nonfinite_gradient(self):
        with pytest.raises(ConvergenceError):
            check_vb(_vb_result([np.nan, 0.0, 0.0, 0.0]))

    def test_vb_nonfinite_components(self):
        with pytest.raises(ConvergenceError):
            check_vb(_vb_result([0.0] * 4, success=True, vcp_mean=(0.0, -np.inf)))

    def test_vb_precision_loss_at_optimum_accepted(self):
        # Large gradient only on random-effect means, which are refitted
        check_vb(_vb_result([1e-4, 0.0, 1e-3, 0.0, 1e6, 1e6]))

    def test_glmm_iteration_limit(self, bees):
        with pytest.raises(ConvergenceError):
            fit_bee_count_glmm(bees, overdispersion=False, maxiter=0)

    def test_lmm_not_converged(self, monkeypatch, temps):
        unconverged = SimpleNamespace(fit=lambda reml=True: SimpleNamespace(converged=False))
        monkeypatch.setattr(honeydew_models.smf, 'mixedlm', lambda *args, **kwargs: unconverged)
        with pytest.raises(ConvergenceError):
            fit_branch_temp_lmm(temps)
        with pytest.raises(ConvergenceError):
            fit_temp_candidates(temps)

    def test_candidate_not_converged(self):
        with pytest.raises(ConvergenceError):
            _check_mle(SimpleNamespace(mle_retvals={'converged': False}), 'negbin:null')
        _check_mle(SimpleNamespace(mle_retvals={'converged': True}), 'negbin:null')


class TestCandidates:
    def test_count_candidates(self, bees):
        fits = fit_count_candidates(bees)
        assert len(fits) == 2 * len(COUNT_CANDIDATES)
        table = compare_models(fits)
        nb = table[table['model'] == 'negbin:interaction'].iloc[0]
        pois = table[table['model'] == 'poisson:interaction'].iloc[0]
        # NB adds the dispersion parameter
        assert nb['k'] == pois['k'] + 1
        assert nb['llf'] >= pois['llf'] - 1e-6

    def test_temp_candidates(self, temps):
        fits = fit_temp_candidates(temps)
        assert set(fits) == set(TEMP_CANDIDATES)
        table = compare_models(fits)
        assert table.loc[0, 'model'] in ('interaction', 'additive', 'black')
        lrt = likelihood_ratio_test(fits['date'], fits['additive'])
        assert lrt['p_value'] < 0.05
