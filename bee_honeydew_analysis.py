# -*- coding: utf-8 -*-
#%%
# Bees Without Flowers: do bees use honeydew from sooty mold like nectar?

"""
Bees Without Flowers: honeydew use analysis.

Chamise plants covered in honeydew-producing sooty mold were compared with
mold-free plants, with insecticide (removes honeydew insects), sugar spray
(honeydew mimic) and black paint (visual mold cue) treatments. Two datasets:
- Bee counts per plant sample under each treatment
- Branch temperatures of blackened vs untreated branches

Run:
    python bee_honeydew_analysis.py --bee-data Meiners_BeeHoneydew_data.csv \
        --temp-data Chamise_BranchTemps.csv
"""

import argparse
import os
import sys
import warnings

import numpy as np
import pandas as pd

import honeydew_data as hd
import honeydew_figures as hf
import honeydew_models as hm
import honeydew_posthoc as hp

# Hypothesis -> (model, term, expected sign, description)
HYPOTHESES = {
    'H1_mold': ('bees', 'Mold', 1, 'Moldy plants attract more bees'),
    'H2_insecticide': ('bees', 'Mold:Insecticide', -1, 'Insecticide removes the mold attraction'),
    'H3_sugar': ('bees', 'Sugar', 1, 'Sugar spray (honeydew mimic) attracts bees'),
    'H4_paint': ('bees', 'Paint', 1, 'Black paint (visual mold cue) attracts bees'),
    'H5_sugar_paint': ('bees', 'Sugar:Paint', 1, 'Sugar and paint act together'),
    'H6_branch_temp': ('temps', 'C(Black)', 1, 'Blackened branches are warmer'),
}


def banner(title):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Bee honeydew manuscript analysis')
    parser.add_argument('--bee-data', default=hd.BEE_DATA_FILE, help='Bee count CSV')
    parser.add_argument('--temp-data', default=hd.TEMP_DATA_FILE, help='Branch temperature CSV')
    parser.add_argument('--plots-dir', default='plots', help='Directory for figures')
    parser.add_argument('--results-dir', default='results', help='Directory for result tables')
    parser.add_argument('--pilot-image', default=None, help='Background photograph for the pilot figure')
    parser.add_argument('--format', default='tiff', choices=['tiff', 'png', 'pdf'], help='Figure file format')
    parser.add_argument('--draws', type=int, default=hp.N_DRAWS, help='Monte Carlo draws for post-hoc tests')
    parser.add_argument('--seed', type=int, default=hp.SEED, help='Random seed for post-hoc draws')
    parser.add_argument('--alpha', type=float, default=hp.ALPHA, help='Significance level / FDR')
    parser.add_argument('--fe-prior-sd', type=float, default=hm.FE_PRIOR_SD,
                        help='Prior SD of GLMM fixed effects in the variational fit')
    parser.add_argument('--vc-prior-sd', type=float, default=hm.VC_PRIOR_SD, help='Prior SD of GLMM log variance components')
    parser.add_argument('--no-overdispersion', action='store_true',
                        help='Fit the bee GLMM without an observation-level random effect')
    parser.add_argument('--show', action='store_true', help='Show figures interactively')
    args = parser.parse_args(argv)
    if args.draws < 100:
        parser.error('--draws must be at least 100')
    if not 0 < args.alpha < 1:
        parser.error('--alpha must be between 0 and 1')
    return args


def verdict(estimate, p_value, expected_sign, alpha):
    if p_value is None or np.isnan(p_value) or p_value >= alpha:
        return 'Not significant'
    if np.sign(estimate) == expected_sign:
        return 'Supported'
    return 'Opposite direction'


def hypothesis_verdicts(anova_tables, alpha):
    rows = []
    for key, (model, term, sign, text) in HYPOTHESES.items():
        table = anova_tables[model]
        match = table[table['term'] == term]
        if match.empty:
            continue
        row = match.iloc[0]
        rows.append({
            'hypothesis': key,
            'description': text,
            'term': term,
            'estimate': row['estimate'],
            'p_value': row['p_value'],
            'verdict': verdict(row['estimate'], row['p_value'], sign, alpha),
        })
    return pd.DataFrame(rows)


def export_table(df, results_dir, name):
    path = os.path.join(results_dir, name)
    df.to_csv(path, index=False)
    print(f"Saved {name} to: {path}")
    return path


def export_summary(result, results_dir, name):
    path = os.path.join(results_dir, name)
    with open(path, 'w', encoding='utf-8') as fh:
        fh.write(str(result.summary()))
    print(f"Saved model summary to: {path}")
    return path


def run(args):
    os.makedirs(args.results_dir, exist_ok=True)
    os.makedirs(args.plots_dir, exist_ok=True)

    #%%
    # ========================================================================
    # PHASE 1: DATA LOADING AND OVERVIEW
    # ========================================================================
    banner("PHASE 1: DATA LOADING")
    try:
        bees = hd.load_bee_counts(args.bee_data)
        temps = hd.load_branch_temps(args.temp_data)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    overview = hd.describe_datasets(bees, temps)
    print(f"Loaded: {overview['bee_rows']} plant samples, {overview['temp_rows']} branch temperatures")
    print(f"  Plants: {overview['plants']} across {overview['sites']} sites, "
          f"{overview['sampling_occasions']} sampling occasions")
    print(f"  Bee count - Total: {overview['bee_total']}, Mean: {overview['bee_mean']:.2f}, "
          f"Variance: {overview['bee_variance']:.2f}")
    if overview['bee_variance'] > overview['bee_mean']:
        print("  Variance exceeds mean: counts are overdispersed")
    print("\nPlant samples per treatment:")
    for label, count in overview['treatments'].items():
        print(f"  {label}: {count}")
    print(f"\nBranch temperature - Blackened: {overview['temp_mean_black']:.2f}C, "
          f"Not blackened: {overview['temp_mean_plain']:.2f}C")

    #%%
    # ========================================================================
    # PHASE 2: BEE COUNT MODEL (OVERDISPERSED POISSON GLMM)
    # ========================================================================
    banner("PHASE 2: BEE COUNT GLMM")
    print(f"Formula: {hm.BEE_COUNT_FORMULA}")
    print(f"Random intercepts: {', '.join(hm.BEE_COUNT_VC)}"
          + ("" if args.no_overdispersion else " + observation level"))
    bee_fit = hm.fit_bee_count_glmm(bees, overdispersion=not args.no_overdispersion,
                                    fe_prior_sd=args.fe_prior_sd, vc_prior_sd=args.vc_prior_sd)
    bee_coefs = hm.coefficient_table(bee_fit)
    print("\nFixed effects (log scale):")
    print("-" * 50)
    for _, row in bee_coefs.iterrows():
        print(f"{row['term']:25} β={row['estimate']:+.4f}  SE={row['std_error']:.4f}  p={row['p_value']:.4f}")

    glmm = bee_fit['result']
    print("\nRandom effect SDs:")
    for name, sd in bee_fit['vc_sd'].items():
        print(f"  {name:25} {sd:.4f}")

    bee_anova = hm.type3_anova(bee_fit, test='F')
    print("\nType III Wald F tests:")
    for _, row in bee_anova.iterrows():
        print(f"  {row['term']:25} F({row['num_df']}, {row['den_df']})={row['statistic']:.3f}  p={row['p_value']:.4f}")

    #%%
    # ========================================================================
    # PHASE 3: BRANCH TEMPERATURE MODEL (LMM)
    # ========================================================================
    banner("PHASE 3: BRANCH TEMPERATURE LMM")
    print(f"Formula: {hm.BRANCH_TEMP_FORMULA}  (groups: {hm.BRANCH_TEMP_GROUPS})")
    temp_fit = hm.fit_branch_temp_lmm(temps)
    lmm = temp_fit['result']
    for _, row in hm.coefficient_table(temp_fit).iterrows():
        print(f"{row['term']:25} β={row['estimate']:+.4f}  SE={row['std_error']:.4f}  p={row['p_value']:.4f}")
    print(f"Plant variance: {float(np.asarray(lmm.cov_re)[0, 0]):.4f}, Residual variance: {lmm.scale:.4f}")

    temp_anova = hm.type3_anova(temp_fit, test='F')
    print("\nType III Wald F tests:")
    for _, row in temp_anova.iterrows():
        print(f"  {row['term']:25} F({row['num_df']}, {row['den_df']})={row['statistic']:.3f}  p={row['p_value']:.4f}")

    mean_date = float(temps['julDate'].mean())
    black_mean = hm.blackening_at_date(temp_fit, mean_date)
    print(f"\nBlackening effect at mean date (julDate={mean_date:.1f}): "
          f"{black_mean['estimate']:+.3f} °C (SE={black_mean['std_error']:.3f}, p={black_mean['p_value']:.4g})")

    #%%
    # ========================================================================
    # PHASE 4: MODEL COMPARISON (AIC / BIC)
    # ========================================================================
    banner("PHASE 4: MODEL COMPARISON")
    count_fits = hm.fit_count_candidates(bees)
    count_table = hm.compare_models(count_fits)
    print("Bee count candidates (GLM):")
    print(count_table.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
    nb_vs_pois = hm.likelihood_ratio_test(count_fits['poisson:interaction'], count_fits['negbin:interaction'])
    print(f"\nOverdispersion (NB vs Poisson): LR={nb_vs_pois['statistic']:.2f}, "
          f"df={nb_vs_pois['df']}, p={nb_vs_pois['p_value']:.4g}")

    temp_fits = hm.fit_temp_candidates(temps)
    temp_table = hm.compare_models(temp_fits)
    print("\nBranch temperature candidates (LMM, ML):")
    print(temp_table.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
    black_lrt = hm.likelihood_ratio_test(temp_fits['date'], temp_fits['additive'])
    print(f"\nBlackening effect (LR test): LR={black_lrt['statistic']:.2f}, p={black_lrt['p_value']:.4g}")

    #%%
    # ========================================================================
    # PHASE 5: POST-HOC TREATMENT COMPARISONS
    # ========================================================================
    banner("PHASE 5: POST-HOC COMPARISONS (MONTE CARLO + FDR)")
    groups = hp.treatment_groups(bees)
    print(f"Treatments: {', '.join(groups)}")
    print(f"Draws: {args.draws}, seed: {args.seed}, alpha: {args.alpha}")
    posthoc = hp.pairwise_posthoc(bee_fit['beta'], bee_fit['cov'], bee_fit['names'], groups,
                                  n_draws=args.draws, seed=args.seed, alpha=args.alpha)
    for _, row in posthoc.iterrows():
        flag = '*' if row['significant'] else ' '
        print(f" {flag} {row['treatment_a']:>20} vs {row['treatment_b']:<20} "
              f"ratio={row['ratio']:.2f} [{row['ratio_lower']:.2f}, {row['ratio_upper']:.2f}]  "
              f"p={row['p_value']:.4f}  p_fdr={row['p_fdr']:.4f}")
    print(f"Significant after FDR: {int(posthoc['significant'].sum())} of {len(posthoc)}")

    effects = hp.effect_sizes_vs_control(bees)
    print("\nEffect sizes vs control (Cohen's d):")
    for _, row in effects.iterrows():
        print(f"  {row['treatment']:25} d={row['cohens_d']:+.3f} ({row['magnitude']}), total bees={row['total_bees']}")

    #%%
    # ========================================================================
    # PHASE 6: FIGURES
    # ========================================================================
    banner("PHASE 6: FIGURES")
    figures = [
        hf.plot_pilot_study(args.plots_dir, background=args.pilot_image, fmt=args.format, show=args.show),
        hf.plot_effect_sizes(effects, args.plots_dir, fmt=args.format, show=args.show),
        hf.plot_interactions(bees, args.plots_dir, fmt=args.format, show=args.show),
        hf.plot_branch_temps(temps, args.plots_dir, fmt=args.format, show=args.show),
        hf.plot_bee_count_hist(bees, args.plots_dir, fmt=args.format, show=args.show),
        hf.plot_branch_temp_qq(temps, args.plots_dir, fmt=args.format, show=args.show),
        hf.plot_posthoc(posthoc, args.plots_dir, fmt=args.format, show=args.show),
    ]

    #%%
    # ========================================================================
    # PHASE 7: CONCLUSION AND EXPORT
    # ========================================================================
    banner("PHASE 7: CONCLUSION")
    verdicts = hypothesis_verdicts({'bees': bee_anova, 'temps': temp_anova}, args.alpha)
    for _, row in verdicts.iterrows():
        print(f"  {row['hypothesis']:16} {row['description']:45} {row['verdict']} (p={row['p_value']:.4f})")
    supported = int((verdicts['verdict'] == 'Supported').sum())
    print(f"\nHypotheses supported: {supported} of {len(verdicts)}")

    export_table(bee_coefs, args.results_dir, 'bee_count_coefficients.csv')
    export_table(bee_anova, args.results_dir, 'bee_count_type3.csv')
    export_table(temp_anova, args.results_dir, 'branch_temp_type3.csv')
    export_table(count_table, args.results_dir, 'bee_count_model_comparison.csv')
    export_table(temp_table, args.results_dir, 'branch_temp_model_comparison.csv')
    export_table(posthoc, args.results_dir, 'posthoc_pairwise.csv')
    export_table(effects, args.results_dir, 'effect_sizes.csv')
    export_table(verdicts, args.results_dir, 'hypothesis_verdicts.csv')
    export_summary(glmm, args.results_dir, 'bee_count_glmm_summary.txt')
    export_summary(lmm, args.results_dir, 'branch_temp_lmm_summary.txt')

    return {
        'bee_fit': bee_fit,
        'temp_fit': temp_fit,
        'bee_anova': bee_anova,
        'temp_anova': temp_anova,
        'black_at_mean_date': black_mean,
        'count_comparison': count_table,
        'temp_comparison': temp_table,
        'posthoc': posthoc,
        'effects': effects,
        'verdicts': verdicts,
        'figures': figures,
    }


def main(argv=None):
    args = parse_args(argv)
    try:
        sys.stdout.reconfigure(encoding='utf-8')
    except (AttributeError, ValueError):
        pass
    warnings.filterwarnings('ignore')
    return run(args)


if __name__ == '__main__':
    main()
