# -*- coding: utf-8 -*-
"""
Data loading and cleaning for the honeydew analysis.

Two datasets are used:
- Bee counts: bees recorded per plant sample under the mold, insecticide,
  sugar and paint treatments
- Branch temperatures: temperature of blackened vs untreated chamise branches
"""

import numpy as np
import pandas as pd

BEE_DATA_FILE = 'Meiners_BeeHoneydew_data.csv'
TEMP_DATA_FILE = 'Chamise_BranchTemps.csv'

TREATMENT_COLS = ['Mold', 'Insecticide', 'Sugar', 'Paint']
ID_COLS = ['Plant_Code', 'Site', 'Treatment_Code']
BEE_COLS = ID_COLS + ['Bee_Count'] + TREATMENT_COLS + ['min_day', 'julDate']
TEMP_COLS = ID_COLS + ['Black', 'julDate', 'BranchTempC']

# Label order used when a plant carries more than one treatment
LABEL_ORDER = ['Mold', 'Sugar', 'Insecticide', 'Paint']
CONTROL = 'Control'


def _require_columns(df, required, source):
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"{source}: missing required column(s): {', '.join(missing)}")


def _require_binary(df, cols, source):
    for col in cols:
        bad = set(pd.unique(df[col].dropna())) - {0, 1}
        if bad:
            raise ValueError(f"{source}: column '{col}' must be 0/1, found {sorted(bad)}")
        df[col] = df[col].astype(int)


def _as_category(df, cols):
    for col in cols:
        df[col] = df[col].astype(str).astype('category')


def treatment_label(mold, insecticide, sugar, paint):
    flags = {'Mold': mold, 'Insecticide': insecticide, 'Sugar': sugar, 'Paint': paint}
    parts = [name for name in LABEL_ORDER if int(flags[name]) == 1]
    if not parts:
        return CONTROL
    return ' + '.join(parts)


def load_bee_counts(path=BEE_DATA_FILE):
    """Load the bee count dataset and derive grouping factors.

    Rows missing any model column are dropped (listwise), as the mixed model
    would drop them anyway.
    """
    bees = pd.read_csv(path)
    source = str(path)
    _require_columns(bees, BEE_COLS, source)

    n_raw = len(bees)
    bees = bees.dropna(subset=BEE_COLS).copy()
    n_dropped = n_raw - len(bees)
    if n_dropped:
        print(f"Dropped {n_dropped} bee count rows with missing values")

    counts = pd.to_numeric(bees['Bee_Count'])
    if (counts < 0).any() or not np.allclose(counts, np.round(counts)):
        raise ValueError(f"{source}: 'Bee_Count' must hold non-negative integers")
    bees['Bee_Count'] = counts.round().astype(int)

    _require_binary(bees, TREATMENT_COLS, source)
    _as_category(bees, ID_COLS)

    bees['plant_site'] = bees['Plant_Code'].astype(str) + ':' + bees['Site'].astype(str)
    bees['day_date'] = bees['min_day'].astype(str) + ':' + bees['julDate'].astype(str)
    bees = bees.reset_index(drop=True)
    bees['obs_id'] = np.arange(len(bees))
    bees['treatment'] = [
        treatment_label(m, i, s, p)
        for m, i, s, p in bees[TREATMENT_COLS].itertuples(index=False)
    ]
    return bees


def load_branch_temps(path=TEMP_DATA_FILE):
    """Load the branch temperature dataset (listwise deletion of missing rows)."""
    temps = pd.read_csv(path)
    source = str(path)
    _require_columns(temps, TEMP_COLS, source)

    n_raw = len(temps)
    temps = temps.dropna().copy()
    n_dropped = n_raw - len(temps)
    if n_dropped:
        print(f"Dropped {n_dropped} branch temperature rows with missing values")

    _require_binary(temps, ['Black'], source)
    _as_category(temps, ID_COLS)
    temps['BranchTempC'] = temps['BranchTempC'].astype(float)
    temps['plant_site'] = temps['Plant_Code'].astype(str) + ':' + temps['Site'].astype(str)
    return temps.reset_index(drop=True)


def mold_trials(bees):
    # Natural mold x insecticide arm: no sugar spray, no paint
    return bees[(bees['Sugar'] == 0) & (bees['Paint'] == 0)].copy()


def sugar_trials(bees):
    # Sugar x paint arm, applied to mold-free plants only
    return bees[(bees['Mold'] == 0) & (bees['Insecticide'] == 0)].copy()


def describe_datasets(bees, temps):
    counts = bees['Bee_Count']
    return {
        'bee_rows': len(bees),
        'plants': bees['plant_site'].nunique(),
        'sites': bees['Site'].nunique(),
        'sampling_occasions': bees['day_date'].nunique(),
        'treatments': bees['treatment'].value_counts().to_dict(),
        'bee_total': int(counts.sum()),
        'bee_mean': float(counts.mean()),
        'bee_variance': float(counts.var(ddof=1)) if len(counts) > 1 else np.nan,
        'temp_rows': len(temps),
        'temp_plants': temps['plant_site'].nunique(),
        'temp_mean_black': float(temps.loc[temps['Black'] == 1, 'BranchTempC'].mean()),
        'temp_mean_plain': float(temps.loc[temps['Black'] == 0, 'BranchTempC'].mean()),
    }
