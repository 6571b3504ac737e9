"""Shared synthetic datasets for the honeydew analysis tests.

Data are simulated in-memory so the suite runs without the field data on disk.
"""

import sys
from pathlib import Path

import matplotlib

matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

# Ensure the project root is importable when the package is not installed
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

# (Mold, Insecticide, Sugar, Paint) -> expected bees per sample
TREATMENT_RATES = {
    (0, 0, 0, 0): 0.4,
    (1, 0, 0, 0): 2.5,
    (0, 1, 0, 0): 0.4,
    (1, 1, 0, 0): 0.6,
    (0, 0, 1, 0): 2.0,
    (0, 0, 0, 1): 0.5,
    (0, 0, 1, 1): 1.8,
}


def make_bee_frame(seed=0, sites=2, plants_per_site=3, days=4):
    rng = np.random.default_rng(seed)
    day_effects = rng.normal(0, 0.2, size=days)
    rows = []
    plant_no = 0
    for t_idx, (combo, rate) in enumerate(TREATMENT_RATES.items()):
        mold, insecticide, sugar, paint = combo
        for site in range(sites):
            for _ in range(plants_per_site):
                plant_no += 1
                plant_effect = rng.normal(0, 0.3)
                for day in range(days):
                    mu = rate * np.exp(plant_effect + day_effects[day])
                    # Gamma-Poisson mixture gives overdispersed counts
                    lam = rng.gamma(shape=2.0, scale=mu / 2.0)
                    rows.append({
                        'Plant_Code': f'P{plant_no}',
                        'Site': f'S{site + 1}',
                        'Treatment_Code': f'T{t_idx}',
                        'Bee_Count': int(rng.poisson(lam)),
                        'Mold': mold,
                        'Insecticide': insecticide,
                        'Sugar': sugar,
                        'Paint': paint,
                        'min_day': 1 + day % 2,
                        'julDate': 150 + 3 * day,
                    })
    return pd.DataFrame(rows)


def make_temp_frame(seed=1, plants=12, dates=3):
    rng = np.random.default_rng(seed)
    rows = []
    for plant in range(plants):
        plant_effect = rng.normal(0, 1.0)
        for black in (0, 1):
            for d in range(dates):
                jul = 150 + 5 * d
                rows.append({
                    'Plant_Code': f'C{plant + 1}',
                    'Site': f'S{plant % 2 + 1}',
                    'Treatment_Code': 'B' if black else 'N',
                    'Black': black,
                    'julDate': jul,
                    'BranchTempC': 22.0 + 3.0 * black + 0.1 * (jul - 150) + plant_effect + rng.normal(0, 1.0),
                })
    return pd.DataFrame(rows)


@pytest.fixture
def bee_frame():
    return make_bee_frame()


@pytest.fixture
def temp_frame():
    return make_temp_frame()


@pytest.fixture
def bee_csv(tmp_path, bee_frame):
    path = tmp_path / 'bees.csv'
    bee_frame.to_csv(path, index=False)
    return path


@pytest.fixture
def temp_csv(tmp_path, temp_frame):
    frame = temp_frame.copy()
    # One incomplete row, removed by listwise deletion
    frame.loc[len(frame)] = ['C99', 'S1', 'N', 0, 160, np.nan]
    path = tmp_path / 'temps.csv'
    frame.to_csv(path, index=False)
    return path


@pytest.fixture
def bees(bee_csv):
    from honeydew_data import load_bee_counts
    return load_bee_counts(bee_csv)


@pytest.fixture
def temps(temp_csv):
    from honeydew_data import load_branch_temps
    return load_branch_temps(temp_csv)
