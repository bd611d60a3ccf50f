from __future__ import annotations

import math

import numpy as np
import pytest

import larva_rpt_run_all as rpt


def test_build_model_specs_scopes(demo_df, quick_cfg) -> None:
    specs = rpt.build_model_specs(demo_df, quick_cfg)
    scopes = [s.scope for s in specs]
    # 2 habitats x 3 ages x 2 traits
    assert scopes.count("block") == 12
    assert scopes.count("multitrait") == 6
    assert scopes.count("habitat_pooled") == 4
    assert scopes.count("pooled") == 2
    assert len({s.name for s in specs}) == len(specs)

    first = specs[0]
    assert first.scope == "block"
    assert first.query == {"habitat": "lake", "age": "7", "trait": "activity"}


def test_build_model_specs_covariates(demo_df, quick_cfg) -> None:
    quick_cfg.covariates = True
    specs = rpt.build_model_specs(demo_df, quick_cfg)
    assert all("body_length_z" in s.terms for s in specs)


def test_resolve_terms_drops_unsupported(repeatable_block) -> None:
    one_trial = repeatable_block[repeatable_block["trial"].eq(1)]
    data, terms = rpt.resolve_terms(one_trial, ["C(age)", "trial_c"])
    assert terms == []

    data, terms = rpt.resolve_terms(repeatable_block, ["C(age)", "trial_c"])
    assert terms == ["trial_c"]
    assert data["trial_c"].mean() == pytest.approx(0.0)


def test_fit_lmm_recovers_variance_components(block_fit) -> None:
    assert block_fit.converged
    assert block_fit.n_obs == 240
    assert block_fit.n_groups == 60
    assert list(block_fit.fixed_effects["term"]) == ["Intercept", "trial_c"]
    assert 0.7 < block_fit.var_res < 1.3

    r = rpt.repeatability(block_fit)
    assert 0.25 < r["R"] < 0.75
    assert r["R_enh"] <= r["R"]
    assert len(block_fit.blups()) == 60


def test_variance_decomposition_bounds(block_fit) -> None:
    dec = rpt.variance_decomposition(block_fit)
    assert 0.0 <= dec["r2_marginal"] <= dec["r2_conditional"] <= 1.0
    assert dec["var_ind"] == block_fit.var_ind


def test_parametric_bootstrap_interval(block_fit) -> None:
    boot = rpt.bootstrap_repeatability(block_fit, nboot=20, boot_type="parametric", seed=11)
    assert boot["n_boot"] + boot["n_boot_failed"] == 20
    assert boot["draws"].size == boot["n_boot"]
    assert 0.0 <= boot["R_ci_low"] <= boot["R_ci_up"] <= 1.0
    r = rpt.repeatability(block_fit)["R"]
    assert boot["R_ci_low"] <= r <= boot["R_ci_up"]
    assert boot["R_se"] > 0


def test_cluster_bootstrap_draws_in_range(block_fit) -> None:
    boot = rpt.bootstrap_repeatability(block_fit, nboot=10, boot_type="cluster", seed=5)
    assert boot["n_boot"] > 0
    assert np.all((boot["draws"] >= 0) & (boot["draws"] <= 1))


def test_bootstrap_rejects_unknown_scheme(block_fit) -> None:
    with pytest.raises(ValueError):
        rpt.bootstrap_repeatability(block_fit, nboot=2, boot_type="jackknife")


def test_bootstrap_without_replicates(block_fit) -> None:
    boot = rpt.bootstrap_repeatability(block_fit, nboot=0)
    assert boot["n_boot"] == 0
    assert math.isnan(boot["R_ci_low"])


def test_permutation_test_detects_repeatability(block_fit) -> None:
    perm = rpt.permutation_test(block_fit, npermut=19, seed=3)
    assert perm["n_permut"] + perm["n_permut_failed"] == 19
    assert perm["perm_p"] <= 0.1

    off = rpt.permutation_test(block_fit, npermut=0)
    assert math.isnan(off["perm_p"])


def test_lrt_repeatability(block_fit, unrepeatable_block) -> None:
    lrt = rpt.lrt_repeatability(block_fit)
    assert lrt["lrt_stat"] > 0
    assert lrt["lrt_p"] < 0.001

    data, terms = rpt.resolve_terms(unrepeatable_block, ["trial_c"])
    null_fit = rpt.fit_lmm(data, "y ~ " + " + ".join(terms), group_col="individual")
    null_lrt = rpt.lrt_repeatability(null_fit)
    assert null_lrt["lrt_stat"] >= 0
    assert 0.0 <= null_lrt["lrt_p"] <= 0.5
    assert rpt.repeatability(null_fit)["R"] < rpt.repeatability(block_fit)["R"]


def test_adjust_pvalues_keeps_nan() -> None:
    adj = rpt.adjust_pvalues([0.01, np.nan, 0.04, 0.03])
    assert math.isnan(adj[1])
    finite = adj[[0, 2, 3]]
    assert np.all(finite >= np.array([0.01, 0.04, 0.03]))
    assert np.all(finite <= 1.0)
    assert np.all(np.isnan(rpt.adjust_pvalues([np.nan, np.nan])))


def test_format_pvalue() -> None:
    assert rpt.format_pvalue(float("nan")) == "NA"
    assert rpt.format_pvalue(0.0) == "<1e-300"
    assert rpt.format_pvalue(5e-6) == "5.00e-06"
    assert rpt.format_pvalue(0.0005) == "<0.001"
    assert rpt.format_pvalue(0.25) == "0.250"


def test_run_model_block(demo_df, quick_cfg) -> None:
    spec = next(s for s in rpt.build_model_specs(demo_df, quick_cfg) if s.scope == "block")
    res = rpt.run_model(demo_df, spec, quick_cfg, seed=1)
    assert res.status in ("OK", "NOT_CONVERGED")
    assert res.row["n_ind"] == 8
    assert res.row["formula"] == "y ~ trial_c"
    assert 0.0 <= res.row["R"] <= 1.0
    assert res.draws.size == res.row["n_boot"]
    assert len(res.blup_rows) == 8
    assert {fr["term"] for fr in res.fixed_rows} == {"Intercept", "trial_c"}


def test_run_model_pooled_and_cluster(demo_df, quick_cfg) -> None:
    quick_cfg.boot_type = "cluster"
    spec = next(s for s in rpt.build_model_specs(demo_df, quick_cfg) if s.scope == "pooled")
    res = rpt.run_model(demo_df, spec, quick_cfg, seed=2)
    assert res.status in ("OK", "NOT_CONVERGED")
    # same fish followed through three ages
    assert res.row["n_ind"] == 16
    assert "C(age):C(habitat)" in res.row["formula"]


def test_run_model_insufficient(quick_cfg) -> None:
    df = rpt.prepare_response(rpt.simulate_dataset(n_fish=6, n_trials=1, habitats=("lake",), ages=("7",),
                                                   traits=("activity",), seed=0))
    spec = rpt.build_model_specs(df, quick_cfg)[0]
    res = rpt.run_model(df, spec, quick_cfg, seed=0)
    assert res.status == "INSUFFICIENT"
    assert res.fit is None
    assert res.row["n_ind"] == 0


def test_results_frames_adds_fdr(demo_df, quick_cfg) -> None:
    specs = [s for s in rpt.build_model_specs(demo_df, quick_cfg) if s.scope == "block"][:3]
    results = rpt.run_all_models(demo_df, specs, quick_cfg)
    frames = rpt.results_frames(results)
    rep = frames["repeatability"]
    assert list(rep.columns) == rpt.REPEATABILITY_COLS
    assert len(rep) == 3
    assert (rep["lrt_p_fdr"] >= rep["lrt_p"] - 1e-12).all()
    assert set(frames["draws"]["model"]) <= set(rep["model"])


class _FakeResult:
    def __init__(self, converged: bool) -> None:
        self.converged = converged


class _FakeModel:
    """Scripted `fit` outcomes, one per optimizer call."""

    def __init__(self, outcomes) -> None:
        self.outcomes = list(outcomes)
        self.methods = []

    def fit(self, reml=True, method=None):
        self.methods.append(method)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_fit_mixedlm_raises_when_every_optimizer_errors() -> None:
    model = _FakeModel([ValueError("singular"), np.linalg.LinAlgError("not pd"), ValueError("nan"),
                        ValueError("nan")])
    with pytest.raises(rpt.ModelFitError, match="lbfgs: singular"):
        rpt._fit_mixedlm(model)
    assert model.methods == list(rpt.OPTIMIZERS)


def test_fit_mixedlm_prefers_converged_then_first_fallback() -> None:
    first, second = _FakeResult(False), _FakeResult(True)
    res, method = rpt._fit_mixedlm(_FakeModel([first, second]))
    assert res is second and method == "bfgs"

    a, b = _FakeResult(False), _FakeResult(False)
    res, method = rpt._fit_mixedlm(_FakeModel([ValueError("x"), a, b, _FakeResult(False)]))
    assert res is a and method == "bfgs"


def test_run_model_failed_fit_is_reported(demo_df, quick_cfg, monkeypatch) -> None:
    def failing(model, reml=True, optimizers=rpt.OPTIMIZERS):
        raise rpt.ModelFitError("lbfgs: singular matrix")

    monkeypatch.setattr(rpt, "_fit_mixedlm", failing)
    spec = rpt.build_model_specs(demo_df, quick_cfg)[0]
    res = rpt.run_model(demo_df, spec, quick_cfg, seed=0)
    assert res.status == "FAILED"
    assert res.fit is None

    rep = rpt.results_frames([res])["repeatability"]
    assert rep.loc[0, ["status", "message"]].tolist() == ["FAILED", "lbfgs: singular matrix"]
    assert np.isnan(rep.loc[0, "R"])


def test_run_model_keeps_non_converged_fit(demo_df, quick_cfg, monkeypatch) -> None:
    real = rpt._fit_mixedlm

    def never_converges(model, reml=True, optimizers=rpt.OPTIMIZERS):
        res, method = real(model, reml=reml, optimizers=optimizers)
        res.converged = False
        return res, method

    monkeypatch.setattr(rpt, "_fit_mixedlm", never_converges)
    spec = rpt.build_model_specs(demo_df, quick_cfg)[0]
    res = rpt.run_model(demo_df, spec, quick_cfg, seed=0)
    assert res.status == "NOT_CONVERGED"
    assert res.row["converged"] is False
    assert 0.0 <= res.row["R"] <= 1.0
    assert rpt.results_frames([res])["repeatability"].loc[0, "status"] == "NOT_CONVERGED"


def test_build_model_specs_single_habitat_has_no_pooled(quick_cfg) -> None:
    df = rpt.prepare_response(rpt.simulate_dataset(n_fish=8, habitats=("lake",), seed=0))
    scopes = {s.scope for s in rpt.build_model_specs(df, quick_cfg)}
    assert scopes == {"block", "multitrait", "habitat_pooled"}


def test_build_model_specs_names_unique_for_lookalike_labels(quick_cfg) -> None:
    df = rpt.prepare_response(rpt.simulate_dataset(n_fish=6, habitats=("lake a", "lake-a"), ages=("7",),
                                                   traits=("activity",), seed=0))
    specs = rpt.build_model_specs(df, quick_cfg)
    names = [s.name for s in specs]
    assert len(names) == len(set(names))
    blocks = [s for s in specs if s.scope == "block"]
    assert {s.habitat for s in blocks} == {"lake a", "lake-a"}
    assert all(s.name.startswith("block__lake-a__7__activity") for s in blocks)
