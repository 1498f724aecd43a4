# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Synthetic telemetry shared by the tests.
"""

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from haulout_compare import (
    GamEstimator,
    GamEstimatorConfig,
    GamFactorConfig,
    GamLinearConfig,
    GamRandomEffectConfig,
    GamSolverConfig,
    add_derived_features,
)

CATEGORIES = ['AF', 'AM', 'SA', 'YOY']
BLOCK_HOURS = 48


def make_telemetry(seed=0, n_subjects=8, n_days=6, rho=0.0):
    """
    Hourly dry/wet records for ``n_subjects`` subjects, two per category,
    split into 48-hour blocks. Subject i starts on day 100 + 3 * i.
    """
    rng = np.random.default_rng(seed)
    frames = []
    for i in range(n_subjects):
        subject = f"S{i:02d}"
        agesex = CATEGORIES[i % len(CATEGORIES)]
        n = n_days * 24
        t = np.arange(n)
        yday = 100 + 3 * i + t // 24
        hour = t % 24
        temp = 8 + 0.1 * (yday - 120) + 3 * np.sin(2 * np.pi * (hour - 9) / 24) + rng.normal(0, 0.5, n)
        wind = np.abs(5 + 2 * np.cos(2 * np.pi * hour / 24) + rng.normal(0, 1, n))
        pressure = 1012 + 0.2 * (yday - 110) + rng.normal(0, 1, n)
        precip = np.abs(rng.normal(0, 0.3, n))

        noise = rng.normal(0, 1, n)
        for k in range(1, n):
            if k % BLOCK_HOURS:
                noise[k] = rho * noise[k - 1] + np.sqrt(1 - rho ** 2) * noise[k]
        eta = (-0.3 + 0.5 * (agesex == 'AM') - 0.4 * (agesex == 'YOY')
               + 1.2 * np.sin(2 * np.pi * hour / 24) + 0.1 * (temp - 8)
               + rng.normal(0, 0.3) + 0.5 * noise)
        frames.append(pd.DataFrame({
            'dry': rng.binomial(1, expit(eta)),
            'subject': subject,
            'block': [f"{subject}-{k // BLOCK_HOURS}" for k in t],
            'agesex': agesex,
            'yday': yday,
            'hour': hour,
            'temp': temp,
            'wind': wind,
            'pressure': pressure,
            'precip': precip,
        }))
    return add_derived_features(pd.concat(frames, ignore_index=True))


@pytest.fixture(scope="module")
def telemetry():
    return make_telemetry()


def simple_gam_config(fast=False):
    return GamEstimatorConfig(
        terms=[
            GamFactorConfig('agesex'),
            GamLinearConfig('temp'),
            GamLinearConfig('sin1'),
            GamLinearConfig('cos1'),
            GamRandomEffectConfig('subject'),
        ],
        solver_config=GamSolverConfig(fast=fast),
    )


@pytest.fixture(scope="module")
def fitted_gam(telemetry):
    return GamEstimator(simple_gam_config()).fit(telemetry, telemetry['dry'])
