# -*- coding: utf-8 -*-
"""
Publication figures for the honeydew manuscript.

Figure 1 is a collection of photographs and is not generated here.
"""

import os

import numpy as np
import pandas as pd
import seaborn as sns
import matplotlib.pyplot as plt
from matplotlib.patches import Patch
import statsmodels.api as sm

from honeydew_data import mold_trials, sugar_trials

# name -> (file stem, size in inches, dpi)
FIGURES = {
    'pilot': ('ChamisePilot', (8, 5), 300),
    'effect_size': ('ChamiseEffectSize', (10, 6), 200),
    'interaction': ('ChamiseInteraction', (10, 6), 300),
    'branch_temps': ('ChamiseBranchTemps', (7, 5), 200),
    'bee_hist': ('Chamise_hist_BeeAbund', (7, 6), 150),
    'temps_qq': ('ChamiseBranchTemps_QQ', (7, 6), 150),
    'posthoc': ('ChamisePosthoc', (10, 7), 200),
}

# Pilot season totals: pre-bloom (moldy, mold-free), flowering (moldy, mold-free)
PILOT_LABELS = ['Moldy ', 'Mold-free ', 'Moldy', 'Mold-free']
PILOT_COUNTS = [124, 30, 0, 6]

colors_map = {
    'Significant': '#2e7d32',
    'Not significant': '#616161',
    'No insecticide': 'chartreuse4',
    'Insecticide': 'darkslateblue',
    'No paint': 'magenta',
    'Paint': 'black',
    'Label': 'blue',
}
# matplotlib has no R 'chartreuse4'
NAMED_COLOURS = {'chartreuse4': '#458b00'}


def _colour(name):
    return NAMED_COLOURS.get(name, name)


def save_figure(fig, plots_dir, key, fmt='tiff', show=False):
    stem, _, dpi = FIGURES[key]
    os.makedirs(plots_dir, exist_ok=True)
    path = os.path.join(plots_dir, f'{stem}.{fmt}')
    if fmt in ('tif', 'tiff'):
        fig.savefig(path, dpi=dpi, bbox_inches='tight', facecolor='white',
                    pil_kwargs={'compression': 'tiff_lzw'})
    else:
        fig.savefig(path, dpi=dpi, bbox_inches='tight', facecolor='white')
    if show:
        plt.show()
    plt.close(fig)
    print(f"Saved {key} figure to: {path}")
    return path


def _new_figure(key, **kwargs):
    _, size, _ = FIGURES[key]
    return plt.subplots(figsize=size, facecolor='white', **kwargs)


#%%
# ============================================================================
# FIGURE 2: PILOT STUDY
# ============================================================================
def plot_pilot_study(plots_dir, background=None, fmt='tiff', show=False):
    fig, ax = _new_figure('pilot')
    x = np.arange(len(PILOT_COUNTS))
    ymax = max(PILOT_COUNTS) * 1.05

    if background is not None:
        img = plt.imread(background)
        ax.imshow(img, extent=(-0.5, len(x) - 0.5, 0, ymax), aspect='auto', zorder=0)

    ax.bar(x, PILOT_COUNTS, width=0.5, linewidth=2, zorder=2,
           color=['black', 'white', 'black', 'white'],
           edgecolor=['white', 'black', 'white', 'black'])
    ax.set_xticks(x)
    ax.set_xticklabels(PILOT_LABELS, fontsize=14, fontweight='bold')
    ax.set_xlim(-0.5, len(x) - 0.5)
    ax.set_ylim(0, ymax)
    ax.set_xlabel('Pre-bloom                 |                  Flowering', fontsize=15, fontweight='bold')
    ax.set_ylabel('Total pilot study bee count', fontsize=15, fontweight='bold')
    ax.tick_params(axis='y', labelsize=14)
    for spine in ax.spines.values():
        spine.set_linewidth(2)
    plt.tight_layout()
    return save_figure(fig, plots_dir, 'pilot', fmt=fmt, show=show)


#%%
# ============================================================================
# FIGURE 3: EFFECT SIZE VS TOTAL BEE COUNT
# ============================================================================
def plot_effect_sizes(effects, plots_dir, fmt='tiff', show=False):
    fig, ax = _new_figure('effect_size')
    d = effects['cohens_d'].to_numpy()
    totals = effects['total_bees'].to_numpy()
    if len(d):
        ax.scatter(d, totals, s=250, c=effects['colour'].tolist(), zorder=3)

    span = max(totals.max(), 1) if len(totals) else 1
    for label, xv, yv in zip(effects['treatment'], d, totals):
        ax.text(xv, yv + span * 0.07, label, ha='center', fontsize=13, fontweight='bold',
                color=colors_map['Label'])

    # Conventional thresholds for small/medium/large effects
    for xv, label, colour in [(0.2, 'Small', 'gray'), (0.5, 'Medium', 'orange'), (0.8, 'Large', 'red')]:
        ax.text(xv, -span * 0.11, label, ha='center', fontsize=15, fontweight='bold', color=colour)

    lo, hi = (d.min(), d.max()) if len(d) else (0.0, 0.0)
    ax.set_xlim(min(-0.07, lo - 0.07), max(1.05, hi + 0.07))
    ax.set_ylim(-span * 0.13, span * 1.15)
    ax.set_xticks([0, 0.2, 0.5, 0.8, 1.0])
    ax.set_xlabel("Cohen's d effect size compared to control", fontsize=18)
    ax.set_ylabel('Total bee count', fontsize=18)
    ax.tick_params(labelsize=14)
    ax.spines['top'].set_visible(False)
    ax.spines['right'].set_visible(False)
    plt.tight_layout()
    return save_figure(fig, plots_dir, 'effect_size', fmt=fmt, show=show)


#%%
# ============================================================================
# FIGURE 4: INTERACTION PLOT WITH STANDARD ERRORS
# ============================================================================
def group_means(df, x, group, response='Bee_Count'):
    """Mean and standard error of the response per (x, group) cell."""
    stats_df = df.groupby([x, group])[response].agg(['mean', 'sem', 'count']).reset_index()
    stats_df['sem'] = stats_df['sem'].fillna(0.0)
    return stats_df


def _interaction_panel(ax, df, x, group, group_labels, colours, tick_labels, xlabel):
    cells = group_means(df, x, group)
    styles = {0: '--', 1: '-'}
    offsets = {0: -0.03, 1: 0.03}
    for level, label in group_labels.items():
        sub = cells[cells[group] == level].sort_values(x)
        if sub.empty:
            continue
        ax.errorbar(sub[x] + offsets[level], sub['mean'], yerr=sub['sem'],
                    color=_colour(colours[level]), linestyle=styles[level], marker='o',
                    markersize=10, linewidth=2, capsize=4, label=label)
    ax.set_xticks([0, 1])
    ax.set_xticklabels(tick_labels, fontsize=12)
    ax.set_xlim(-0.4, 1.4)
    ax.set_xlabel(xlabel, fontsize=14)
    ax.legend(loc='upper center', frameon=False, fontsize=13)
    return cells


def plot_interactions(bees, plots_dir, fmt='tiff', show=False):
    fig, axs = _new_figure('interaction', ncols=2, sharey=True)

    mold_cells = _interaction_panel(
        axs[0], mold_trials(bees), 'Mold', 'Insecticide',
        {0: 'No insecticide', 1: 'Insecticide'},
        {0: colors_map['No insecticide'], 1: colors_map['Insecticide']},
        ['Mold-free', 'Moldy'], 'Plant natural condition')
    axs[0].set_ylabel('Mean bee abundance', fontsize=14)

    sugar_cells = _interaction_panel(
        axs[1], sugar_trials(bees), 'Sugar', 'Paint',
        {0: 'No paint', 1: 'Paint'},
        {0: colors_map['No paint'], 1: colors_map['Paint']},
        ['No sugar spray', 'Sugar spray'], 'On mold-free plants')

    tops = pd.concat([mold_cells, sugar_cells])
    upper = float((tops['mean'] + tops['sem']).max()) if len(tops) else 0.0
    axs[0].set_ylim(0, max(3.0, np.ceil(upper)))
    axs[0].set_yticks(np.arange(0, axs[0].get_ylim()[1] + 0.5, 1))
    plt.tight_layout()
    return save_figure(fig, plots_dir, 'interaction', fmt=fmt, show=show)


#%%
# ============================================================================
# APPENDIX FIGURES
# ============================================================================
def plot_branch_temps(temps, plots_dir, fmt='tiff', show=False):
    fig, ax = _new_figure('branch_temps')
    sns.boxplot(x='Black', y='BranchTempC', data=temps, order=[0, 1], color='white',
                linecolor='black', ax=ax)
    ax.set_xticks([0, 1])
    ax.set_xticklabels(['Not blackened', 'Blackened'], fontsize=12)
    ax.set_xlabel('Branches', fontsize=13)
    ax.set_ylabel('Average branch temperature (C)', fontsize=13)
    lo = 5 * np.floor(temps['BranchTempC'].min() / 5)
    hi = 5 * np.ceil(temps['BranchTempC'].max() / 5)
    ax.set_yticks(np.arange(lo, hi + 1, 5))
    plt.tight_layout()
    return save_figure(fig, plots_dir, 'branch_temps', fmt=fmt, show=show)


def plot_bee_count_hist(bees, plots_dir, fmt='tiff', show=False):
    fig, ax = _new_figure('bee_hist')
    sns.histplot(bees['Bee_Count'], discrete=True, color='lightgray', edgecolor='black', ax=ax)
    ax.set_xlabel('Bee Abundance per Plant Sample')
    ax.set_ylabel('Plant Sample Frequency')
    plt.tight_layout()
    return save_figure(fig, plots_dir, 'bee_hist', fmt=fmt, show=show)


def plot_branch_temp_qq(temps, plots_dir, fmt='tiff', show=False):
    fig, ax = _new_figure('temps_qq')
    sm.qqplot(temps['BranchTempC'], line='s', ax=ax)
    ax.set_title('Normal Q-Q Plot: Branch Temperature', fontweight='bold')
    plt.tight_layout()
    return save_figure(fig, plots_dir, 'temps_qq', fmt=fmt, show=show)


def plot_posthoc(posthoc, plots_dir, fmt='tiff', show=False):
    """Forest plot of pairwise rate ratios, coloured by FDR significance."""
    fig, ax = _new_figure('posthoc')
    table = posthoc.sort_values('ratio').reset_index(drop=True)
    y = np.arange(len(table))
    verdicts = np.where(table['significant'], 'Significant', 'Not significant')
    colours = [colors_map[v] for v in verdicts]

    lower = table['ratio'] - table['ratio_lower']
    upper = table['ratio_upper'] - table['ratio']
    ax.errorbar(table['ratio'], y, xerr=[lower.clip(lower=0), upper.clip(lower=0)],
                fmt='none', ecolor='#9e9e9e', capsize=3, zorder=1)
    ax.scatter(table['ratio'], y, c=colours, s=50, zorder=2)
    ax.axvline(1.0, color='black', linestyle='--', linewidth=1)
    ax.set_xscale('log')
    ax.set_yticks(y)
    ax.set_yticklabels([f'{a} vs {b}' for a, b in zip(table['treatment_a'], table['treatment_b'])], fontsize=9)
    ax.set_xlabel('Ratio of expected bee counts (log scale)')
    ax.set_title('Post-hoc Treatment Comparisons (FDR-adjusted)', fontweight='bold')
    ax.legend(handles=[
        Patch(color=colors_map['Significant'], label='Significant (FDR < alpha)'),
        Patch(color=colors_map['Not significant'], label='Not significant'),
    ], loc='lower right', frameon=True)
    plt.tight_layout()
    return save_figure(fig, plots_dir, 'posthoc', fmt=fmt, show=show)
