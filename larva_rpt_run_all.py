#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
larva_rpt_run_all.py
Reproducible repeatability analysis of larval fish behaviour (GitHub-safe: no hardcoded paths)

What it does:
- Loads behavioural measurement tables (CSV/XLSX, long or wide layout, one or many files)
- Coerces fish/age/habitat/trait columns to factors and measurements to numerics
- Fits random-intercept linear mixed models (REML) per habitat x age x trait block,
  per habitat x age across traits, and pooled across ages and habitats
- Decomposes variance (among-individual, residual, fixed) with marginal/conditional R2
- Estimates repeatability with bootstrap CIs (parametric or individual-level),
  permutation p-values and boundary-corrected likelihood-ratio tests (BH-FDR adjusted)
- Renders model diagnostics and paper figures (forest plot, variance decomposition,
  reaction norms, bootstrap distributions)

This script is designed for:
- Local reproduction (paper figures/tables can be regenerated from these outputs)
- GitHub public repository (raw measurement files can remain outside the repo and be referenced by path)
"""

from __future__ import annotations

import argparse
import json
import math
import re
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

# stats
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import stats
from statsmodels.graphics.gofplots import qqplot
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import ConvergenceWarning

# resampling
from sklearn.utils import resample

# plotting
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402


KNOWN_TRAITS = [
    "activity",
    "exploration",
    "boldness",
    "sociability",
    "thigmotaxis",
    "freezing",
    "velocity",
    "distance",
]
FACTOR_COLS = ["fish_id", "habitat", "age", "trait", "arena"]
NUMERIC_COLS = ["value", "trial", "body_length"]
REQUIRED_COLS = ["fish_id", "trait", "value"]

OPTIMIZERS = ("lbfgs", "bfgs", "powell", "nm")
BOOT_OPTIMIZERS = ("lbfgs", "bfgs")
SCOPES = ("block", "multitrait", "habitat_pooled", "pooled")

# Okabe-Ito colorblind-safe palette
PALETTE = ["#0072B2", "#E69F00", "#009E73", "#D55E00", "#CC79A7", "#56B4E9", "#F0E442", "#000000"]

plt.rcParams.update(
    {
        "font.family": "sans-serif",
        "font.size": 9,
        "axes.labelsize": 9,
        "axes.titlesize": 10,
        "legend.fontsize": 7,
        "xtick.labelsize": 8,
        "ytick.labelsize": 8,
        "lines.linewidth": 1.2,
        "savefig.bbox": "tight",
        "savefig.pad_inches": 0.02,
    }
)

REPEATABILITY_COLS = [
    "model", "scope", "habitat", "age", "trait", "status", "formula", "optimizer", "converged",
    "n_obs", "n_ind", "R", "R_enh", "R_se", "R_ci_low", "R_ci_up", "ci_level", "boot_type",
    "n_boot", "n_boot_failed", "lrt_stat", "lrt_p", "lrt_p_fmt", "lrt_p_fdr",
    "perm_p", "n_permut", "n_permut_failed", "message",
]
VARIANCE_COLS = [
    "model", "scope", "habitat", "age", "trait", "status", "n_obs", "n_ind",
    "var_ind", "var_res", "var_fixed", "r2_marginal", "r2_conditional", "llf", "aic", "bic",
]


class ModelFitError(RuntimeError):
    """No optimizer produced a mixed-model fit."""


@dataclass
class RunConfig:
    out_dir: Path
    transform: str = "none"
    standardize: bool = False
    covariates: bool = False
    nboot: int = 1000
    npermut: int = 0
    boot_type: str = "parametric"
    ci_level: float = 0.95
    min_obs_per_id: int = 2
    seed: int = 42
    plots: bool = True
    max_ids_plot: int = 30
    dpi: int = 300


@dataclass
class ModelSpec:
    """One mixed model to fit: which rows, which fixed effects."""

    name: str
    scope: str
    terms: List[str]
    query: Dict[str, str]
    habitat: str = "all"
    age: str = "all"
    trait: str = "all"


@dataclass
class LmmFit:
    formula: str
    optimizer: str
    converged: bool
    result: object
    X: np.ndarray
    y: np.ndarray
    groups: np.ndarray
    fixed_effects: pd.DataFrame
    var_ind: float
    var_res: float
    var_fixed: float
    llf: float
    aic: float
    bic: float

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])

    @property
    def n_groups(self) -> int:
        return int(pd.unique(self.groups).shape[0])

    def blups(self) -> pd.Series:
        """Random intercept (BLUP) per individual."""
        re_ = self.result.random_effects
        return pd.Series({g: float(np.asarray(v)[0]) for g, v in re_.items()}, name="blup")


@dataclass
class ModelResult:
    spec: ModelSpec
    status: str
    row: Dict
    fixed_rows: List[Dict] = field(default_factory=list)
    blup_rows: List[Dict] = field(default_factory=list)
    draws: np.ndarray = field(default_factory=lambda: np.array([]))
    fit: Optional[LmmFit] = None


# ---------------------------
# Utilities
# ---------------------------

def log(msg: str) -> None:
    print(msg, flush=True)

def ensure_dir(p: Path) -> Path:
    p.mkdir(parents=True, exist_ok=True)
    return p

def format_pvalue(p: float) -> str:
    """Readable p-value formatting for tables."""
    if p is None or (isinstance(p, float) and (np.isnan(p) or np.isinf(p))):
        return "NA"
    if p < 1e-300:
        return "<1e-300"
    if p < 1e-4:
        return f"{p:.2e}"
    if p < 0.001:
        return "<0.001"
    return f"{p:.3f}"

def age_sort_key(age) -> Tuple[int, object]:
    """Numeric ages first (7 < 14 < 21), then any text label such as 'all'."""
    try:
        return (0, float(age))
    except (TypeError, ValueError):
        return (1, str(age))

def _age_rank(s: pd.Series) -> pd.Series:
    order = {a: i for i, a in enumerate(sorted(s.dropna().unique(), key=age_sort_key))}
    return s.map(order)

def _sort_blocks(df: pd.DataFrame, cols: Sequence[str]) -> pd.DataFrame:
    return df.sort_values(list(cols), key=lambda s: _age_rank(s) if s.name == "age" else s).reset_index(drop=True)

def _clean_level(x) -> Optional[str]:
    """Factor level as a stripped string; 7.0 -> '7'; blanks -> None."""
    if pd.isna(x):
        return None
    if isinstance(x, (bool, np.bool_)):
        return str(x)
    if isinstance(x, (int, np.integer)):
        return str(int(x))
    if isinstance(x, (float, np.floating)):
        return str(int(x)) if float(x).is_integer() else str(float(x))
    s = str(x).strip()
    if s == "" or s.lower() in {"nan", "none", "na", "n/a"}:
        return None
    return s

def _slug(*parts) -> str:
    text = "__".join(str(p) for p in parts if p is not None)
    return re.sub(r"[^A-Za-z0-9_.\-]+", "-", text).strip("-")

def _ratio(num: float, rest: float) -> float:
    denom = num + rest
    return float(num / denom) if denom > 0 else 0.0


# ---------------------------
# Loading & coercion
# ---------------------------

def canonicalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Map likely headers to internal names."""
    colmap = {}
    for c in df.columns:
        cl = str(c).strip().lower()
        cl = re.sub(r"[_\-\.]+", " ", cl)
        cl = re.sub(r"\s+", " ", cl)

        # strip units in [] or ()
        cl_stripped = re.sub(r"\(.*?\)|\[.*?\]", "", cl).strip()

        if re.search(r"\b(trial|repeat|repetition|session|replicate|run)\b", cl_stripped):
            colmap[c] = "trial"
        elif re.search(r"\b(arena|well|tank|plate)\b", cl_stripped):
            colmap[c] = "arena"
        elif re.search(r"\bid\b", cl_stripped) or cl_stripped in {"fish", "larva", "larvae", "individual", "subject"}:
            colmap[c] = "fish_id"
        elif re.search(r"\bage\b", cl_stripped) or "dpf" in cl:
            colmap[c] = "age"
        elif re.search(r"\b(habitat|origin|population|site)\b", cl_stripped):
            colmap[c] = "habitat"
        elif re.search(r"\b(trait|behaviour|behavior|variable)\b", cl_stripped):
            colmap[c] = "trait"
        elif re.search(r"\b(body length|standard length|total length|sl|bl|tl)\b", cl_stripped):
            colmap[c] = "body_length"
        else:
            trait = next((t for t in KNOWN_TRAITS if re.search(rf"\b{t}\b", cl_stripped)), None)
            if trait is not None:
                colmap[c] = trait
            elif re.search(r"\b(value|score|response|measurement)\b", cl_stripped):
                colmap[c] = "value"
            else:
                colmap[c] = c

    return df.rename(columns=colmap)

def dedupe_columns(df: pd.DataFrame, numeric_cols: Iterable[str]) -> pd.DataFrame:
    """
    Coalesce duplicate column names created by header canonicalization.

    Numeric duplicates are coerced and merged first-non-null (left-to-right);
    non-numeric duplicates keep the first occurrence.
    """
    numeric_cols = set(numeric_cols)
    for name in pd.unique(df.columns):
        mask = [c == name for c in df.columns]
        if sum(mask) <= 1:
            continue

        block = df.loc[:, mask]
        if name in numeric_cols:
            merged = block.apply(lambda s: pd.to_numeric(s, errors="coerce")).bfill(axis=1).iloc[:, 0]
        else:
            merged = block.iloc[:, 0]
        df = df.loc[:, [not m for m in mask]].copy()
        df[name] = merged

    return df

def parse_block_from_name(stem: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Return (habitat, age) inferred from a file name stem.
    - age from '7dpf', '7 dpf', 'age14', 'age_21'
    - habitat is the first remaining alphabetic token that is not a filler word
    Either part is None when it cannot be inferred.
    """
    s = str(stem).lower()
    age = None
    m = re.search(r"(\d+(?:\.\d+)?)\s*dpf", s)
    if m:
        age = m.group(1)
    else:
        m2 = re.search(r"age[\s_\-]*(\d+(?:\.\d+)?)", s)
        if m2:
            age = m2.group(1)

    filler = {"age", "dpf", "data", "raw", "behaviour", "behavior", "larva", "larvae",
              "fish", "trial", "trials", "measurements", "measurement", "repeatability"}
    habitat = None
    for tok in re.split(r"[_\-\s.]+", s):
        if not tok or tok in filler or re.search(r"\d", tok):
            continue
        if tok.isalpha():
            habitat = tok
            break

    if age is not None:
        age = _clean_level(float(age))
    return (habitat, age)

def load_measurements(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Input not found: {path}")

    if path.suffix.lower() in {".xlsx", ".xls"}:
        df = pd.read_excel(path)
    else:
        df = pd.read_csv(path)
    df = canonicalize_columns(df)
    # Coalesce duplicate names introduced by canonicalization
    df = dedupe_columns(df, numeric_cols=NUMERIC_COLS + KNOWN_TRAITS)

    # Wide layout: one column per trait
    trait_cols = [t for t in KNOWN_TRAITS if t in df.columns]
    if "trait" not in df.columns and trait_cols:
        id_vars = [c for c in df.columns if c not in trait_cols]
        df = df.melt(id_vars=id_vars, value_vars=trait_cols, var_name="trait", value_name="value")

    missing = [c for c in REQUIRED_COLS if c not in df.columns]
    if missing:
        raise ValueError(f"{path.name}: missing required column(s) {missing}; found {list(df.columns)}")

    habitat, age = parse_block_from_name(path.stem)
    if "habitat" not in df.columns:
        df["habitat"] = habitat or "all"
    if "age" not in df.columns:
        df["age"] = age or "all"
    df["source"] = path.name

    for k in FACTOR_COLS:
        if k in df.columns:
            df[k] = df[k].map(_clean_level)
    for k in NUMERIC_COLS:
        if k in df.columns:
            df[k] = pd.to_numeric(df[k], errors="coerce")

    df["trait"] = df["trait"].map(lambda t: t.lower() if isinstance(t, str) else t)
    df["habitat"] = df["habitat"].fillna("all")
    df["age"] = df["age"].fillna("all")

    n0 = len(df)
    df = df.dropna(subset=REQUIRED_COLS).reset_index(drop=True)
    if len(df) < n0:
        log(f"[WARN] {path.name}: dropped {n0 - len(df)} row(s) with missing fish_id/trait/value")

    # Measurement order within fish stands in for a missing trial number
    order = df.groupby(["habitat", "age", "fish_id", "trait"], sort=False).cumcount() + 1
    if "trial" not in df.columns:
        df["trial"] = order
    df["trial"] = df["trial"].fillna(order).astype(float)

    return df

def load_inputs(paths: Sequence[Path]) -> pd.DataFrame:
    frames = [load_measurements(p) for p in paths]
    return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=REQUIRED_COLS)

def zscore_within(df: pd.DataFrame, col: str, by: Sequence[str]) -> pd.Series:
    """Z-score of `col` within groups; zero-variance groups get 0."""
    g = df.groupby(list(by), sort=False)[col]
    mu = g.transform("mean")
    sd = g.transform("std")
    z = (df[col] - mu) / sd
    return z.where(sd > 0, 0.0)

def prepare_response(df: pd.DataFrame, transform: str = "none", standardize: bool = False) -> pd.DataFrame:
    """Build the modelling response `y` from `value`."""
    out = df.copy()
    v = out["value"].astype(float)
    if transform == "none":
        y = v
    elif transform == "log1p":
        y = np.log1p(v.where(v > -1))
    elif transform == "sqrt":
        y = np.sqrt(v.where(v >= 0))
    else:
        raise ValueError(f"Unknown transform: {transform}")
    out["y"] = y

    n_bad = int(out["y"].isna().sum())
    if n_bad:
        log(f"[WARN] {transform} undefined for {n_bad} value(s); rows dropped")
        out = out.dropna(subset=["y"])

    if standardize:
        out["y"] = zscore_within(out, "y", ["habitat", "age", "trait"])
    return out.reset_index(drop=True)

def simulate_dataset(n_fish: int = 24,
                     n_trials: int = 4,
                     habitats: Sequence[str] = ("lake", "stream"),
                     ages: Sequence[str] = ("7", "14", "21"),
                     traits: Sequence[str] = ("activity", "exploration"),
                     repeatability: Optional[Dict[str, float]] = None,
                     seed: int = 42) -> pd.DataFrame:
    """
    Synthetic long-format measurements with known variance components.

    Residual variance is 1 and among-individual variance is R / (1 - R), so
    `repeatability` (trait -> R) is the true adjusted repeatability of every
    block. Individual effects persist across ages within a habitat.
    """
    rng = np.random.default_rng(seed)
    defaults = {"activity": 0.5, "exploration": 0.3}
    repeatability = repeatability or {}

    rows = []
    for h_i, habitat in enumerate(habitats):
        prefix = habitat[:1].upper()
        body = {(f, a): 3.2 + 0.4 * a_i + rng.normal(0, 0.2)
                for f in range(n_fish) for a_i, a in enumerate(ages)}
        for trait in traits:
            r = float(repeatability.get(trait, defaults.get(trait, 0.4)))
            if not 0.0 <= r < 1.0:
                raise ValueError(f"repeatability for {trait} must be in [0, 1): {r}")
            u = rng.normal(0.0, math.sqrt(r / (1.0 - r)), n_fish)
            for a_i, age in enumerate(ages):
                for f in range(n_fish):
                    for t in range(1, n_trials + 1):
                        rows.append({
                            "fish_id": f"{prefix}{f + 1:03d}",
                            "habitat": habitat,
                            "age": age,
                            "trial": t,
                            "trait": trait,
                            "value": 10.0 + 1.5 * a_i + 0.8 * h_i + 0.2 * (t - 1) + u[f] + rng.normal(0.0, 1.0),
                            "body_length": body[(f, age)],
                        })
    return pd.DataFrame(rows)

def summary_table(df: pd.DataFrame, out_tables: Path) -> Path:
    gcols = ["habitat", "age", "trait"]
    agg = df.groupby(gcols)[["value", "y"]].agg(["count", "mean", "std", "sem"])
    agg.columns = ["_".join([a for a in col if a]) for col in agg.columns.to_flat_index()]
    agg = agg.reset_index()
    n_ind = df.groupby(gcols)["fish_id"].nunique().rename("n_individuals").reset_index()
    agg = _sort_blocks(n_ind.merge(agg, on=gcols), gcols)
    out = out_tables / "summary_by_habitat_age_trait.csv"
    agg.to_csv(out, index=False)
    return out


# ---------------------------
# Model specifications
# ---------------------------

def build_model_specs(df: pd.DataFrame, cfg: RunConfig) -> List[ModelSpec]:
    """
    Enumerate the models of a run.
    - block: one per habitat x age x trait, y ~ trial
    - multitrait: one per habitat x age with >= 2 traits, y ~ C(trait) + trial
    - habitat_pooled: one per habitat x trait with >= 2 ages, y ~ C(age) + trial
    - pooled: one per trait with >= 2 habitats, y ~ C(age) * C(habitat) + trial
      (a single-habitat pooled model would repeat habitat_pooled)
    Names are unique; labels that slug alike get the spec index appended.
    """
    extra = ["body_length_z"] if cfg.covariates and "body_length" in df.columns else []
    specs: List[ModelSpec] = []

    habitats = sorted(df["habitat"].unique())
    for habitat in habitats:
        dh = df[df["habitat"].eq(habitat)]
        for age in sorted(dh["age"].unique(), key=age_sort_key):
            traits = sorted(dh.loc[dh["age"].eq(age), "trait"].unique())
            for trait in traits:
                specs.append(ModelSpec(
                    name=_slug("block", habitat, age, trait),
                    scope="block",
                    terms=["trial_c"] + extra,
                    query={"habitat": habitat, "age": age, "trait": trait},
                    habitat=habitat, age=age, trait=trait,
                ))
            if len(traits) >= 2:
                specs.append(ModelSpec(
                    name=_slug("multitrait", habitat, age),
                    scope="multitrait",
                    terms=["C(trait)", "trial_c"] + extra,
                    query={"habitat": habitat, "age": age},
                    habitat=habitat, age=age,
                ))

    for habitat in habitats:
        dh = df[df["habitat"].eq(habitat)]
        for trait in sorted(dh["trait"].unique()):
            if dh.loc[dh["trait"].eq(trait), "age"].nunique() < 2:
                continue
            specs.append(ModelSpec(
                name=_slug("habitat_pooled", habitat, trait),
                scope="habitat_pooled",
                terms=["C(age)", "trial_c"] + extra,
                query={"habitat": habitat, "trait": trait},
                habitat=habitat, trait=trait,
            ))

    for trait in sorted(df["trait"].unique()):
        if df.loc[df["trait"].eq(trait), "habitat"].nunique() < 2:
            continue
        specs.append(ModelSpec(
            name=_slug("pooled", trait),
            scope="pooled",
            terms=["C(age)", "C(habitat)", "C(age):C(habitat)", "trial_c"] + extra,
            query={"trait": trait},
            trait=trait,
        ))

    counts = pd.Series([s.name for s in specs], dtype=object).value_counts()
    for i, spec in enumerate(specs):
        if counts.get(spec.name, 0) > 1:
            spec.name = f"{spec.name}__{i}"
    return specs

def select_rows(df: pd.DataFrame, query: Dict[str, str]) -> pd.DataFrame:
    mask = pd.Series(True, index=df.index)
    for col, level in query.items():
        mask &= df[col].eq(level)
    return df[mask].copy()

def resolve_terms(data: pd.DataFrame, terms: Sequence[str]) -> Tuple[pd.DataFrame, List[str]]:
    """
    Drop fixed-effect terms the data cannot support and add derived columns.
    Factors need >= 2 levels; interactions need every level combination present.
    """
    data = data.copy()
    kept = []
    for term in terms:
        if term == "trial_c":
            if data["trial"].nunique() < 2:
                continue
            data["trial_c"] = data["trial"] - data["trial"].mean()
        elif term == "body_length_z":
            bl = data["body_length"] if "body_length" in data.columns else None
            if bl is None or bl.notna().sum() < 3 or not bl.std() > 0:
                continue
            data["body_length_z"] = (bl - bl.mean()) / bl.std()
        else:
            factors = re.findall(r"C\((\w+)\)", term)
            if any(data[f].nunique() < 2 for f in factors):
                continue
            if len(factors) > 1 and (pd.crosstab(data[factors[0]], data[factors[1]]) == 0).any().any():
                continue
        kept.append(term)
    return data, kept


# ---------------------------
# Mixed models
# ---------------------------

def _fit_mixedlm(model, reml: bool = True, optimizers: Sequence[str] = OPTIMIZERS):
    """
    Try optimizers in order; first converged fit wins, else the first non-converged one.
    Convergence warnings are silenced here; callers read `converged` instead.
    """
    fallback = None
    errors = []
    for method in optimizers:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            warnings.simplefilter("ignore", RuntimeWarning)
            try:
                res = model.fit(reml=reml, method=method)
            except (np.linalg.LinAlgError, ValueError) as exc:
                errors.append(f"{method}: {exc}")
                continue
        if res.converged:
            return res, method
        if fallback is None:
            fallback = (res, method)

    if fallback is not None:
        return fallback
    raise ModelFitError("; ".join(errors) or "no optimizer produced a result")

def _variance_pair(res) -> Tuple[float, float]:
    var_ind = max(float(np.asarray(res.cov_re)[0, 0]), 0.0)
    return var_ind, float(res.scale)

def fit_lmm(data: pd.DataFrame, formula: str, group_col: str = "individual", reml: bool = True) -> LmmFit:
    """Random-intercept LMM via statsmodels MixedLM."""
    data = data.reset_index(drop=True)
    model = smf.mixedlm(formula, data, groups=data[group_col])
    res, optimizer = _fit_mixedlm(model, reml=reml)

    fe = res.fe_params
    k = len(fe)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        bse = np.asarray(res.bse)[:k]
        zval = np.asarray(res.tvalues)[:k]
        pval = np.asarray(res.pvalues)[:k]
        ci = np.asarray(res.conf_int(alpha=0.05))[:k]

    table = pd.DataFrame({
        "term": list(fe.index),
        "estimate": np.asarray(fe, dtype=float),
        "se": bse,
        "z": zval,
        "p_value": pval,
        "ci_low": ci[:, 0],
        "ci_up": ci[:, 1],
    })
    table["p_value_fmt"] = table["p_value"].map(format_pvalue)

    X = np.asarray(model.exog, dtype=float)
    var_ind, var_res = _variance_pair(res)
    return LmmFit(
        formula=formula,
        optimizer=optimizer,
        converged=bool(res.converged),
        result=res,
        X=X,
        y=np.asarray(model.endog, dtype=float),
        groups=data[group_col].to_numpy(),
        fixed_effects=table,
        var_ind=var_ind,
        var_res=var_res,
        var_fixed=float(np.var(X @ np.asarray(fe, dtype=float))),
        llf=float(res.llf),
        aic=float(res.aic),
        bic=float(res.bic),
    )

def variance_decomposition(fit: LmmFit) -> Dict[str, float]:
    """Variance components and Nakagawa-Schielzeth marginal/conditional R2."""
    vf, vi, vr = fit.var_fixed, fit.var_ind, fit.var_res
    total = vf + vi + vr
    return {
        "var_ind": vi,
        "var_res": vr,
        "var_fixed": vf,
        "r2_marginal": vf / total if total > 0 else np.nan,
        "r2_conditional": (vf + vi) / total if total > 0 else np.nan,
    }


# ---------------------------
# Repeatability
# ---------------------------

def repeatability(fit: LmmFit) -> Dict[str, float]:
    """
    Adjusted R = Vind / (Vind + Vres), fixed effects conditioned on.
    Enhanced-agreement R_enh keeps fixed-effect variance in the denominator.
    """
    return {
        "R": _ratio(fit.var_ind, fit.var_res),
        "R_enh": _ratio(fit.var_ind, fit.var_res + fit.var_fixed),
    }

def _refit_repeatability(y: np.ndarray, X: np.ndarray, groups: np.ndarray) -> Optional[float]:
    try:
        res, _ = _fit_mixedlm(sm.MixedLM(y, X, groups), reml=True, optimizers=BOOT_OPTIMIZERS)
    except ModelFitError:
        return None
    var_ind, var_res = _variance_pair(res)
    if not (np.isfinite(var_ind) and np.isfinite(var_res)):
        return None
    return _ratio(var_ind, var_res)

def bootstrap_repeatability(fit: LmmFit,
                            nboot: int,
                            boot_type: str = "parametric",
                            ci_level: float = 0.95,
                            seed: int = 42) -> Dict:
    """
    Bootstrap distribution of adjusted R.
    - parametric: y* = X b + u_j + e with u ~ N(0, Vind), e ~ N(0, Vres), then refit
    - cluster: resample individuals with replacement; duplicates become distinct individuals
    Percentile CI at `ci_level`; failed refits are skipped and counted.
    """
    if boot_type not in {"parametric", "cluster"}:
        raise ValueError(f"Unknown bootstrap type: {boot_type}")

    rng = np.random.default_rng(seed)
    draws: List[float] = []
    failed = 0

    if boot_type == "parametric":
        mu = fit.X @ np.asarray(fit.result.fe_params, dtype=float)
        codes, uniques = pd.factorize(fit.groups)
        sd_ind, sd_res = math.sqrt(fit.var_ind), math.sqrt(fit.var_res)
        for _ in range(int(nboot)):
            u = rng.normal(0.0, sd_ind, len(uniques))
            y_star = mu + u[codes] + rng.normal(0.0, sd_res, len(mu))
            r = _refit_repeatability(y_star, fit.X, fit.groups)
            if r is None:
                failed += 1
            else:
                draws.append(r)
    else:
        ids = np.asarray(pd.unique(fit.groups))
        rows_by_id = {g: np.flatnonzero(fit.groups == g) for g in ids}
        for _ in range(int(nboot)):
            picked = resample(ids, replace=True, n_samples=len(ids),
                              random_state=int(rng.integers(0, 2**31 - 1)))
            idx = np.concatenate([rows_by_id[g] for g in picked])
            new_groups = np.concatenate([np.full(len(rows_by_id[g]), k) for k, g in enumerate(picked)])
            r = _refit_repeatability(fit.y[idx], fit.X[idx], new_groups)
            if r is None:
                failed += 1
            else:
                draws.append(r)

    arr = np.asarray(draws, dtype=float)
    alpha = 1.0 - float(ci_level)
    if arr.size >= 2:
        se = float(np.std(arr, ddof=1))
        lo, up = np.quantile(arr, [alpha / 2.0, 1.0 - alpha / 2.0])
    else:
        se, lo, up = np.nan, np.nan, np.nan

    return {
        "draws": arr,
        "R_se": se,
        "R_ci_low": float(lo),
        "R_ci_up": float(up),
        "n_boot": int(arr.size),
        "n_boot_failed": int(failed),
    }

def permutation_test(fit: LmmFit, npermut: int, seed: int = 43) -> Dict:
    """
    Permutation p-value for R: residuals of the fixed-effects-only OLS fit are
    shuffled across rows and added back to its fitted values before refitting.
    """
    if npermut <= 0:
        return {"perm_p": np.nan, "n_permut": 0, "n_permut_failed": 0}

    rng = np.random.default_rng(seed)
    r_obs = repeatability(fit)["R"]
    ols = sm.OLS(fit.y, fit.X).fit()
    base = np.asarray(ols.fittedvalues, dtype=float)
    resid = np.asarray(ols.resid, dtype=float)

    exceed, ok, failed = 0, 0, 0
    for _ in range(int(npermut)):
        r = _refit_repeatability(base + rng.permutation(resid), fit.X, fit.groups)
        if r is None:
            failed += 1
            continue
        ok += 1
        if r >= r_obs:
            exceed += 1

    return {"perm_p": (1 + exceed) / (1 + ok), "n_permut": ok, "n_permut_failed": failed}

def lrt_repeatability(fit: LmmFit) -> Dict:
    """
    Likelihood-ratio test of Vind = 0 (ML fits, LMM vs OLS with the same fixed effects).
    Boundary-corrected: p = 0.5 * P(chi2_1 > stat).
    """
    try:
        res_ml, _ = _fit_mixedlm(sm.MixedLM(fit.y, fit.X, fit.groups), reml=False)
    except ModelFitError as exc:
        log(f"[WARN] ML refit for LRT failed: {exc}")
        return {"lrt_stat": np.nan, "lrt_p": np.nan}

    llf_ols = float(sm.OLS(fit.y, fit.X).fit().llf)
    stat = max(0.0, 2.0 * (float(res_ml.llf) - llf_ols))
    return {"lrt_stat": stat, "lrt_p": float(0.5 * stats.chi2.sf(stat, 1))}

def adjust_pvalues(pvalues: Iterable[float], method: str = "fdr_bh") -> np.ndarray:
    """Multiple-testing adjustment over the finite entries; NaNs stay NaN."""
    p = np.asarray(list(pvalues), dtype=float)
    out = np.full(p.shape, np.nan)
    mask = np.isfinite(p)
    if mask.any():
        out[mask] = multipletests(p[mask], method=method)[1]
    return out


# ---------------------------
# Orchestration
# ---------------------------

def _individual_keys(scope: str) -> List[str]:
    # Pooled-across-age scopes follow the same fish through ages
    if scope in ("habitat_pooled", "pooled"):
        return ["habitat", "fish_id"]
    return ["habitat", "age", "fish_id"]

def keep_repeated(data: pd.DataFrame, min_obs: int) -> pd.DataFrame:
    """Rows of individuals measured at least `min_obs` times."""
    counts = data["individual"].map(data["individual"].value_counts())
    return data[counts >= min_obs].reset_index(drop=True)

def run_model(df: pd.DataFrame, spec: ModelSpec, cfg: RunConfig, seed: int) -> ModelResult:
    base = {"model": spec.name, "scope": spec.scope, "habitat": spec.habitat,
            "age": spec.age, "trait": spec.trait}

    data = select_rows(df, spec.query)
    data["individual"] = data[_individual_keys(spec.scope)].astype(str).agg("|".join, axis=1)
    if spec.scope == "multitrait":
        data["y"] = zscore_within(data, "y", ["trait"])

    data = keep_repeated(data.dropna(subset=["y"]), cfg.min_obs_per_id)
    data, terms = resolve_terms(data, spec.terms)
    formula = "y ~ " + (" + ".join(terms) if terms else "1")
    covariates = [t for t in terms if not t.startswith("C(")]
    if covariates:
        data = keep_repeated(data.dropna(subset=covariates), cfg.min_obs_per_id)

    n_ind = int(data["individual"].nunique())
    if n_ind < 2 or len(data) <= n_ind:
        msg = f"{n_ind} individual(s) with >= {cfg.min_obs_per_id} observations"
        log(f"[WARN] {spec.name}: insufficient data ({msg})")
        return ModelResult(spec, "INSUFFICIENT", {**base, "status": "INSUFFICIENT", "formula": formula,
                                                  "n_obs": int(len(data)), "n_ind": n_ind, "message": msg})

    try:
        fit = fit_lmm(data, formula, group_col="individual")
    except ModelFitError as exc:
        log(f"[WARN] {spec.name}: model failed ({exc})")
        return ModelResult(spec, "FAILED", {**base, "status": "FAILED", "formula": formula,
                                            "n_obs": int(len(data)), "n_ind": n_ind, "message": str(exc)})

    status = "OK" if fit.converged else "NOT_CONVERGED"
    if not fit.converged:
        log(f"[WARN] {spec.name}: no optimizer converged; keeping {fit.optimizer} fit")

    rpt = repeatability(fit)
    boot = bootstrap_repeatability(fit, cfg.nboot, boot_type=cfg.boot_type, ci_level=cfg.ci_level, seed=seed)
    perm = permutation_test(fit, cfg.npermut, seed=seed + 1)
    lrt = lrt_repeatability(fit)

    row = {
        **base,
        "status": status,
        "formula": formula,
        "optimizer": fit.optimizer,
        "converged": fit.converged,
        "n_obs": fit.n_obs,
        "n_ind": fit.n_groups,
        **rpt,
        **{k: v for k, v in boot.items() if k != "draws"},
        "ci_level": float(cfg.ci_level),
        "boot_type": cfg.boot_type,
        **lrt,
        "lrt_p_fmt": format_pvalue(lrt["lrt_p"]),
        **perm,
        **variance_decomposition(fit),
        "llf": fit.llf,
        "aic": fit.aic,
        "bic": fit.bic,
        "message": "",
    }

    fixed_rows = fit.fixed_effects.assign(model=spec.name, scope=spec.scope).to_dict("records")
    blup_rows = [{"model": spec.name, "individual": g, "blup": v} for g, v in fit.blups().items()]
    return ModelResult(spec, status, row, fixed_rows=fixed_rows, blup_rows=blup_rows,
                       draws=boot["draws"], fit=fit)

def run_all_models(df: pd.DataFrame, specs: Sequence[ModelSpec], cfg: RunConfig) -> List[ModelResult]:
    results = []
    for i, spec in enumerate(specs):
        res = run_model(df, spec, cfg, seed=int(cfg.seed) + 1000 * i)
        if res.status in ("OK", "NOT_CONVERGED"):
            r = res.row
            log(f"[OK] {spec.name}: R={r['R']:.3f} [{r['R_ci_low']:.3f}, {r['R_ci_up']:.3f}] "
                f"LRT p={r['lrt_p_fmt']} (n={r['n_obs']}, ids={r['n_ind']})")
        results.append(res)
    return results

def results_frames(results: Sequence[ModelResult]) -> Dict[str, pd.DataFrame]:
    """Tabulate model results; adds BH-FDR adjusted LRT p-values across models."""
    rows = pd.DataFrame([r.row for r in results])
    for c in sorted(set(REPEATABILITY_COLS) | set(VARIANCE_COLS)):
        if c not in rows.columns:
            rows[c] = np.nan
    rows["lrt_p_fdr"] = adjust_pvalues(rows["lrt_p"])

    draws = [pd.DataFrame({"model": r.spec.name, "scope": r.spec.scope, "draw": np.arange(r.draws.size), "R": r.draws})
             for r in results if r.draws.size]
    return {
        "repeatability": rows[REPEATABILITY_COLS],
        "variance": rows[VARIANCE_COLS],
        "fixed": pd.DataFrame([fr for r in results for fr in r.fixed_rows]),
        "blups": pd.DataFrame([br for r in results for br in r.blup_rows]),
        "draws": pd.concat(draws, ignore_index=True) if draws else pd.DataFrame(columns=["model", "scope", "draw", "R"]),
    }

def write_model_tables(frames: Dict[str, pd.DataFrame], out_tables: Path, out_metrics: Path) -> List[Path]:
    names = {
        "repeatability": "repeatability.csv",
        "variance": "variance_components.csv",
        "fixed": "fixed_effects.csv",
        "blups": "blups.csv",
        "draws": "bootstrap_draws.csv",
    }
    paths = []
    for key, fname in names.items():
        out = out_tables / fname
        frames[key].to_csv(out, index=False)
        paths.append(out)

    models = []
    for r in frames["repeatability"].to_dict("records"):
        models.append({k: (None if isinstance(v, float) and np.isnan(v) else v) for k, v in r.items()})
    out_json = out_metrics / "models.json"
    out_json.write_text(json.dumps({"n_models": len(models), "models": models}, indent=2, default=str),
                        encoding="utf-8")
    paths.append(out_json)
    return paths


# ---------------------------
# Figures
# ---------------------------

def habitat_colors(habitats: Iterable[str]) -> Dict[str, str]:
    return {h: PALETTE[i % len(PALETTE)] for i, h in enumerate(sorted(set(habitats)))}

def _block_label(habitat: str, age: str) -> str:
    return habitat if age == "all" else f"{habitat}, {age} dpf"

def plot_diagnostics(fit: LmmFit, title: str, out_path: Path, dpi: int = 300) -> Path:
    """Residuals vs fitted, residual QQ, residual histogram, BLUP QQ."""
    fitted = np.asarray(fit.result.fittedvalues, dtype=float)
    resid = np.asarray(fit.result.resid, dtype=float)
    blups = fit.blups().to_numpy()

    fig, axes = plt.subplots(2, 2, figsize=(7.0, 6.0))
    ax = axes[0, 0]
    ax.scatter(fitted, resid, s=8, alpha=0.6, color=PALETTE[0])
    ax.axhline(0.0, color="black", lw=0.8, ls="--")
    ax.set_xlabel("Fitted")
    ax.set_ylabel("Residual")
    ax.set_title("Residuals vs fitted")

    qqplot(resid, line="s", ax=axes[0, 1], alpha=0.6)
    axes[0, 1].set_title("Residual QQ")

    axes[1, 0].hist(resid, bins="auto", color=PALETTE[2], alpha=0.8)
    axes[1, 0].set_xlabel("Residual")
    axes[1, 0].set_title("Residual distribution")

    if blups.size >= 3 and np.ptp(blups) > 0:
        qqplot(blups, line="s", ax=axes[1, 1], alpha=0.6)
    else:
        axes[1, 1].text(0.5, 0.5, "No among-individual variance", ha="center", va="center",
                        transform=axes[1, 1].transAxes)
    axes[1, 1].set_title("Random intercept QQ")

    fig.suptitle(title)
    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)
    return out_path

def plot_repeatability_forest(rep_df: pd.DataFrame, out_path: Path, dpi: int = 300) -> Optional[Path]:
    """R with CI per trait panel; x = age, colour = habitat (block models)."""
    d = rep_df[rep_df["scope"].eq("block") & rep_df["R"].notna()]
    if d.empty:
        return None

    traits = sorted(d["trait"].unique())
    habitats = sorted(d["habitat"].unique())
    ages = sorted(d["age"].unique(), key=age_sort_key)
    xpos = {a: i for i, a in enumerate(ages)}
    colors = habitat_colors(habitats)
    offsets = np.linspace(-0.2, 0.2, len(habitats)) if len(habitats) > 1 else np.zeros(1)

    fig, axes = plt.subplots(1, len(traits), figsize=(3.0 * len(traits), 2.8), sharey=True, squeeze=False)
    for ax, trait in zip(axes[0], traits):
        sub = d[d["trait"].eq(trait)]
        for off, habitat in zip(offsets, habitats):
            h = sub[sub["habitat"].eq(habitat)]
            if h.empty:
                continue
            x = h["age"].map(xpos).to_numpy(dtype=float) + off
            r = h["R"].to_numpy(dtype=float)
            lo = np.nan_to_num(np.clip(r - h["R_ci_low"].to_numpy(dtype=float), 0, None))
            up = np.nan_to_num(np.clip(h["R_ci_up"].to_numpy(dtype=float) - r, 0, None))
            ax.errorbar(x, r, yerr=[lo, up], fmt="o", ms=4, capsize=2, color=colors[habitat], label=habitat)
        ax.set_xticks(range(len(ages)))
        ax.set_xticklabels(ages)
        ax.set_xlim(-0.5, len(ages) - 0.5)
        ax.set_ylim(-0.02, 1.02)
        ax.set_xlabel("Age (dpf)")
        ax.set_title(trait.capitalize())
        ax.grid(True, axis="y", alpha=0.3)
    axes[0, 0].set_ylabel("Repeatability (R)")
    axes[0, -1].legend(frameon=False, title="Habitat")

    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)
    return out_path

def plot_variance_decomposition(var_df: pd.DataFrame, out_path: Path, dpi: int = 300) -> Optional[Path]:
    """Stacked proportions of fixed / among-individual / residual variance per block model."""
    d = var_df[var_df["scope"].eq("block") & var_df["var_res"].notna()].copy()
    if d.empty:
        return None
    d = _sort_blocks(d, ["trait", "habitat", "age"])
    total = d["var_fixed"] + d["var_ind"] + d["var_res"]
    parts = [("var_fixed", "Fixed", PALETTE[5]), ("var_ind", "Among-individual", PALETTE[0]),
             ("var_res", "Residual", "#BBBBBB")]
    labels = [f"{t} | {_block_label(h, a)}" for t, h, a in zip(d["trait"], d["habitat"], d["age"])]

    fig, ax = plt.subplots(figsize=(6.0, 0.3 * len(d) + 1.2))
    left = np.zeros(len(d))
    for col, name, color in parts:
        share = (d[col] / total).fillna(0.0).to_numpy(dtype=float)
        ax.barh(range(len(d)), share, left=left, color=color, label=name)
        left += share
    ax.set_yticks(range(len(d)))
    ax.set_yticklabels(labels)
    ax.invert_yaxis()
    ax.set_xlim(0, 1)
    ax.set_xlabel("Proportion of phenotypic variance")
    ax.legend(frameon=False, ncol=3, loc="lower center", bbox_to_anchor=(0.5, 1.0))

    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)
    return out_path

def plot_reaction_norms(df: pd.DataFrame, trait: str, out_path: Path, max_ids: int = 30,
                        seed: int = 42, dpi: int = 300) -> Optional[Path]:
    """Individual trajectories across trials, one panel per habitat x age."""
    d = df[df["trait"].eq(trait)]
    if d.empty:
        return None
    blocks = _sort_blocks(d[["habitat", "age"]].drop_duplicates(), ["habitat", "age"])
    colors = habitat_colors(d["habitat"])
    rng = np.random.default_rng(seed)

    ncols = min(3, len(blocks))
    nrows = int(math.ceil(len(blocks) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(3.0 * ncols, 2.5 * nrows), sharey=True, squeeze=False)
    for ax, (habitat, age) in zip(axes.flat, blocks.itertuples(index=False)):
        b = d[d["habitat"].eq(habitat) & d["age"].eq(age)]
        ids = b["fish_id"].unique()
        if len(ids) > max_ids:
            ids = rng.choice(ids, size=max_ids, replace=False)
        for fid in ids:
            f = b[b["fish_id"].eq(fid)].sort_values("trial")
            ax.plot(f["trial"], f["y"], color=colors[habitat], alpha=0.35, lw=0.7, marker="o", ms=2)
        mean = b.groupby("trial")["y"].mean()
        ax.plot(mean.index, mean.values, color="black", lw=2.0)
        ax.set_title(_block_label(habitat, age))
        ax.set_xlabel("Trial")
    for ax in axes.flat[len(blocks):]:
        ax.set_visible(False)
    for row in axes:
        row[0].set_ylabel(trait.capitalize())

    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)
    return out_path

def plot_bootstrap_distributions(draws_df: pd.DataFrame, rep_df: pd.DataFrame, out_path: Path,
                                 dpi: int = 300) -> Optional[Path]:
    d = draws_df[draws_df["scope"].eq("block")]
    if d.empty:
        return None
    point = rep_df.set_index("model")
    models = list(pd.unique(d["model"]))

    ncols = min(4, len(models))
    nrows = int(math.ceil(len(models) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(2.6 * ncols, 2.0 * nrows), sharex=True, squeeze=False)
    for ax, name in zip(axes.flat, models):
        r = point.loc[name]
        ax.hist(d.loc[d["model"].eq(name), "R"], bins=20, range=(0, 1), color=PALETTE[0], alpha=0.75)
        ax.axvline(float(r["R"]), color=PALETTE[3], lw=1.2)
        ax.set_title(f"{r['trait']} | {_block_label(r['habitat'], r['age'])}", fontsize=7)
    for ax in axes.flat[len(models):]:
        ax.set_visible(False)
    for ax in axes[-1]:
        ax.set_xlabel("Bootstrap R")

    fig.tight_layout()
    fig.savefig(out_path, dpi=dpi)
    plt.close(fig)
    return out_path

def render_figures(df: pd.DataFrame, results: Sequence[ModelResult], frames: Dict[str, pd.DataFrame],
                   out_figures: Path, cfg: RunConfig) -> List[Path]:
    out_diag = ensure_dir(out_figures / "diagnostics")
    paths: List[Path] = []
    for r in results:
        if r.fit is not None:
            paths.append(plot_diagnostics(r.fit, f"{r.spec.name}\n{r.fit.formula}",
                                          out_diag / f"{r.spec.name}.png", dpi=cfg.dpi))

    paths.append(plot_repeatability_forest(frames["repeatability"], out_figures / "repeatability_forest.png", dpi=cfg.dpi))
    paths.append(plot_variance_decomposition(frames["variance"], out_figures / "variance_decomposition.png", dpi=cfg.dpi))
    for trait in sorted(df["trait"].unique()):
        paths.append(plot_reaction_norms(df, trait, out_figures / f"reaction_norms_{_slug(trait)}.png",
                                         max_ids=cfg.max_ids_plot, seed=cfg.seed, dpi=cfg.dpi))
    paths.append(plot_bootstrap_distributions(frames["draws"], frames["repeatability"],
                                              out_figures / "bootstrap_distributions.png", dpi=cfg.dpi))
    return [p for p in paths if p is not None]


# ---------------------------
# CLI
# ---------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Mixed-model repeatability of larval behaviour across ages and habitats.")
    ap.add_argument("--data", type=str, nargs="+", default=[], help="One or more CSV/XLSX measurement files.")
    ap.add_argument("--data-dir", type=str, default="", help="Folder of CSV/XLSX files (used when --data is absent).")
    ap.add_argument("--demo", action="store_true", help="Run on a simulated dataset instead of input files.")
    ap.add_argument("--demo-fish", type=int, default=24, help="Individuals per habitat in the simulated dataset.")
    ap.add_argument("--out-dir", type=str, default="outputs", help="Output directory.")
    ap.add_argument("--transform", choices=["none", "log1p", "sqrt"], default="none", help="Response transform.")
    ap.add_argument("--standardize", action="store_true", help="Z-score the response within habitat x age x trait.")
    ap.add_argument("--covariates", action="store_true", help="Add z-scored body length as a fixed effect when present.")
    ap.add_argument("--nboot", type=int, default=1000, help="Bootstrap replicates for repeatability CIs.")
    ap.add_argument("--npermut", type=int, default=0, help="Permutation replicates (0 disables).")
    ap.add_argument("--boot-type", choices=["parametric", "cluster"], default="parametric", help="Bootstrap scheme.")
    ap.add_argument("--ci-level", type=float, default=0.95, help="Confidence level of bootstrap intervals.")
    ap.add_argument("--min-obs-per-id", type=int, default=2, help="Drop individuals with fewer observations per model.")
    ap.add_argument("--seed", type=int, default=42, help="Random seed for simulation and resampling.")
    ap.add_argument("--no-plots", action="store_true", help="Skip figure rendering.")
    ap.add_argument("--max-ids-plot", type=int, default=30, help="Individuals drawn per reaction-norm panel.")
    ap.add_argument("--dpi", type=int, default=300, help="Figure resolution.")
    return ap

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    out_dir = Path(args.out_dir).resolve()
    out_tables = ensure_dir(out_dir / "tables")
    out_metrics = ensure_dir(out_dir / "metrics")
    out_logs = ensure_dir(out_dir / "logs")
    out_figures = ensure_dir(out_dir / "figures")

    cfg = RunConfig(
        out_dir=out_dir,
        transform=args.transform,
        standardize=bool(args.standardize),
        covariates=bool(args.covariates),
        nboot=int(args.nboot),
        npermut=int(args.npermut),
        boot_type=args.boot_type,
        ci_level=float(args.ci_level),
        min_obs_per_id=int(args.min_obs_per_id),
        seed=int(args.seed),
        plots=not args.no_plots,
        max_ids_plot=int(args.max_ids_plot),
        dpi=int(args.dpi),
    )
    if not 0.0 < cfg.ci_level < 1.0:
        log(f"[ERROR] --ci-level must be in (0, 1): {cfg.ci_level}")
        return 2

    # Resolve inputs
    if args.demo:
        demo_path = ensure_dir(out_dir / "inputs") / "demo_measurements.csv"
        simulate_dataset(n_fish=int(args.demo_fish), seed=cfg.seed).to_csv(demo_path, index=False)
        input_paths = [demo_path]
    elif args.data:
        input_paths = [Path(p) for p in args.data]
    elif args.data_dir:
        dd = Path(args.data_dir)
        input_paths = sorted(p for p in dd.glob("*") if p.suffix.lower() in {".csv", ".xlsx", ".xls"})
        if not input_paths:
            log(f"[ERROR] No CSV/XLSX files in {dd}")
            return 2
    else:
        log("[ERROR] Provide inputs via --data, --data-dir or --demo.")
        return 2

    input_paths = [p.resolve() for p in input_paths]
    for p in input_paths:
        log(f"[INFO] Input  = {p}")
    log(f"[INFO] Out    = {out_dir}")
    log(f"[INFO] nboot  = {cfg.nboot} ({cfg.boot_type}), npermut = {cfg.npermut}")

    # Load
    try:
        df0 = load_inputs(input_paths)
    except (FileNotFoundError, ValueError) as exc:
        log(f"[ERROR] {exc}")
        return 2

    df = prepare_response(df0, transform=cfg.transform, standardize=cfg.standardize)
    if df.empty:
        log("[ERROR] No usable measurements after cleaning.")
        return 2
    log(f"[INFO] {len(df)} measurements, {df['fish_id'].nunique()} fish ids, "
        f"habitats={sorted(df['habitat'].unique())}, ages={sorted(df['age'].unique(), key=age_sort_key)}, "
        f"traits={sorted(df['trait'].unique())}")

    # Tables
    summary_path = summary_table(df, out_tables)
    log(f"[OK] {summary_path.name}")

    specs = build_model_specs(df, cfg)
    log(f"[INFO] {len(specs)} model(s) to fit")
    results = run_all_models(df, specs, cfg)
    frames = results_frames(results)
    for p in write_model_tables(frames, out_tables, out_metrics):
        log(f"[OK] {p.name}")

    # Full row-level export
    out_full = out_tables / "dataset_clean.csv"
    df.to_csv(out_full, index=False)
    log(f"[OK] {out_full.name}")

    if cfg.plots:
        for p in render_figures(df, results, frames, out_figures, cfg):
            log(f"[OK] {p.name}")

    # Run metadata
    statuses = pd.Series([r.status for r in results], dtype=object).value_counts().to_dict()
    run_info = {
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "inputs": [str(p) for p in input_paths],
        "outputs": {"out_dir": str(out_dir)},
        "params": {
            "demo": bool(args.demo),
            "transform": cfg.transform,
            "standardize": cfg.standardize,
            "covariates": cfg.covariates,
            "nboot": cfg.nboot,
            "npermut": cfg.npermut,
            "boot_type": cfg.boot_type,
            "ci_level": cfg.ci_level,
            "min_obs_per_id": cfg.min_obs_per_id,
            "seed": cfg.seed,
        },
        "model_status": {str(k): int(v) for k, v in statuses.items()},
        "notes": [
            "Repeatability is adjusted R = Vind / (Vind + Vres) from REML random-intercept models.",
            "LRT p-values are boundary-corrected (0.5 * chi2_1) and BH-FDR adjusted across all models.",
        ],
    }
    (out_logs / "RUN_INFO.json").write_text(json.dumps(run_info, indent=2), encoding="utf-8")
    log("[DONE] Pipeline completed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
