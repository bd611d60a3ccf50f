from __future__ import annotations

import pytest

import larva_rpt_run_all as rpt


def _single_block(repeatability: float, seed: int):
    df = rpt.simulate_dataset(
        n_fish=60,
        n_trials=4,
        habitats=("lake",),
        ages=("7",),
        traits=("activity",),
        repeatability={"activity": repeatability},
        seed=seed,
    )
    df = rpt.prepare_response(df)
    df["individual"] = df["fish_id"]
    return df


@pytest.fixture
def repeatable_block():
    return _single_block(0.5, seed=1)


@pytest.fixture
def unrepeatable_block():
    return _single_block(0.0, seed=2)


@pytest.fixture
def block_fit(repeatable_block):
    data, terms = rpt.resolve_terms(repeatable_block, ["trial_c"])
    return rpt.fit_lmm(data, "y ~ " + " + ".join(terms), group_col="individual")


@pytest.fixture
def demo_df():
    return rpt.prepare_response(rpt.simulate_dataset(n_fish=8, seed=3))


@pytest.fixture
def quick_cfg(tmp_path):
    return rpt.RunConfig(out_dir=tmp_path, nboot=5, npermut=3, seed=7, dpi=40)
