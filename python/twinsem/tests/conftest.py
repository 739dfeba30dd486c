import threading
import time

import numpy as np
import pandas as pd
import pytest

from twinsem import Engine, FitStatistics, OptimizationError


class MockEngine(Engine):
    """Engine double: fit statistics come from a lookup by model name.

    Unlisted models get ``-2LL = 1000 - 10 * n_free`` so that dropping
    parameters worsens fit. ``fail`` lists names whose fit raises
    ``OptimizationError``, ``fail_intervals`` only when intervals are
    requested; ``errors`` maps names to arbitrary exceptions.
    """

    def __init__(self, minus2ll=None, aic=None, fail=(), errors=None, delay=None, fail_intervals=(), config=None):
        super().__init__(config)
        self.minus2ll_by_name = dict(minus2ll or {})
        self.aic_by_name = dict(aic or {})
        self.fail = set(fail)
        self.fail_intervals = set(fail_intervals)
        self.errors = dict(errors or {})
        self.delay = dict(delay or {})
        self.calls = []
        self._lock = threading.Lock()

    def fit(self, model, intervals=False):
        with self._lock:
            self.calls.append(model.name)
        if model.name in self.delay:
            time.sleep(self.delay[model.name])
        if model.name in self.errors:
            raise self.errors[model.name]
        if model.name in self.fail or (intervals and model.name in self.fail_intervals):
            raise OptimizationError("optimizer did not converge")

        ep = len(model.free_labels())
        m2ll = self.minus2ll_by_name.get(model.name, 1000.0 - 10.0 * ep)
        aic = self.aic_by_name.get(model.name, m2ll + 2.0 * ep)
        out = model.copy()
        out.fit = FitStatistics(minus2ll=m2ll, n_parameters=ep, df=200 - ep, aic=aic)
        if intervals:
            out.fit.intervals = {
                label: (value - 0.1, value, value + 0.1) for label, value in model.parameters().items()
            }
        return out


def make_twin_data(names, n_pairs=60, seed=1, sep="_T"):
    rng = np.random.default_rng(seed)
    cols = {}
    for name in names:
        shared = rng.normal(size=n_pairs)
        for twin in (1, 2):
            cols[f"{name}{sep}{twin}"] = shared + rng.normal(scale=0.8, size=n_pairs)
    return pd.DataFrame(cols)


@pytest.fixture
def engine():
    return MockEngine()


@pytest.fixture
def twin_data():
    names = ["ht", "wt"]
    return make_twin_data(names, seed=1), make_twin_data(names, seed=2)


@pytest.fixture
def gxe_data():
    mz = make_twin_data(["bmi", "age"], seed=3)
    dz = make_twin_data(["bmi", "age"], seed=4)
    return mz, dz


@pytest.fixture
def make_engine():
    return MockEngine


@pytest.fixture
def make_data():
    return make_twin_data
