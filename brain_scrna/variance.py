#!/usr/bin/env python3
"""
Variance modelling utilities for single-cell RNA-seq analysis
Handles the mean-variance trend and splitting variance into technical and biological parts
"""

from dataclasses import dataclass
from typing import Callable

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import sparse, stats
from scipy.optimize import curve_fit
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from brain_scrna.analysis_params import VARIANCE_PARAMS


@dataclass
class VarianceFit:
    """Mean-variance trend and the points it was fitted on"""

    mean: np.ndarray
    var: np.ndarray
    trend: Callable
    parametric: bool
    used_spikes: bool


def _mean_var(X):
    """Per-column mean and unbiased variance, for dense or sparse X"""
    n = X.shape[0]
    if sparse.issparse(X):
        mean = np.asarray(X.mean(axis=0)).ravel()
        mean_sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
        var = (mean_sq - mean**2) * n / (n - 1)
    else:
        X = np.asarray(X)
        mean = X.mean(axis=0)
        var = X.var(axis=0, ddof=1)
    return mean, np.maximum(var, 0)


def _parametric_curve(x, a, n, b):
    return a * x / (x**n + b)


def fit_variance_trend(
    adata,
    use_spikes=True,
    parametric=VARIANCE_PARAMS["parametric"],
    span=VARIANCE_PARAMS["span"],
    min_mean=VARIANCE_PARAMS["min_mean"],
    min_spikes=VARIANCE_PARAMS["min_spikes"],
):
    """Fit the technical mean-variance trend of log-expression values

    The trend is fitted on spike-in genes, which carry no biological
    variability. With ``parametric``, the curve ``a*x / (x**n + b)`` is fitted
    first and LOWESS smooths the log-ratio of the variances to it.

    Args:
        adata: Normalized AnnData object with log-expression in X
        use_spikes: Fit on spike-ins; endogenous genes are used if there are too few
        parametric: Fit the parametric curve before smoothing
        span: LOWESS span
        min_mean: Genes with a lower mean are left out of the fit
        min_spikes: Minimum number of usable spike-ins

    Returns:
        VarianceFit with a ``trend`` callable of the mean
    """
    print("Fitting mean-variance trend...")

    is_spike = adata.var["is_spike"].values
    mean, var = _mean_var(adata.X)
    usable = (mean >= min_mean) & (var > 0)

    used_spikes = use_spikes and (usable & is_spike).sum() >= min_spikes
    if use_spikes and not used_spikes:
        print("  Warning: too few spike-ins, fitting the trend to endogenous genes")
    points = usable & (is_spike if used_spikes else ~is_spike)

    if points.sum() < 3:
        raise ValueError(f"only {points.sum()} genes available to fit a variance trend")

    x, y = mean[points], var[points]

    params = None
    if parametric:
        try:
            params, _ = curve_fit(
                _parametric_curve,
                x,
                y,
                p0=(y.max() * 2, 1.0, 1.0),
                bounds=(0, np.inf),
                maxfev=10000,
            )
        except RuntimeError as err:
            print(f"  Warning: parametric fit failed ({err}), using LOWESS only")

    def base(values):
        if params is None:
            return np.ones_like(values, dtype=float)
        return _parametric_curve(values, *params)

    smoothed = lowess(np.log(y / base(x)), x, frac=span, return_sorted=True)
    xs, idx = np.unique(smoothed[:, 0], return_index=True)
    ys = smoothed[idx, 1]
    x_min, x_max = xs[0], xs[-1]

    def trend(values):
        values = np.asarray(values, dtype=float)
        inner = np.clip(values, x_min, x_max)
        fitted = base(inner) * np.exp(np.interp(inner, xs, ys))
        # Straight line to the origin below the fitted range
        below = values < x_min
        fitted[below] *= values[below] / x_min
        return fitted

    return VarianceFit(
        mean=x, var=y, trend=trend, parametric=params is not None, used_spikes=used_spikes
    )


def decompose_variance(adata, fit):
    """Split each gene's variance into technical and biological components

    Args:
        adata: Normalized AnnData object with log-expression in X
        fit: VarianceFit from ``fit_variance_trend``

    Returns:
        DataFrame of non-spike genes sorted by decreasing biological variance.
        The same columns are added to adata.var (missing for spike-ins).
    """
    print("Decomposing gene variance...")

    genes = ~adata.var["is_spike"].values
    mean, total = _mean_var(adata.X[:, genes])
    tech = fit.trend(mean)
    bio = total - tech

    n_cells = adata.n_obs
    with np.errstate(divide="ignore", invalid="ignore"):
        p_value = stats.chi2.sf(total / tech * (n_cells - 1), df=n_cells - 1)
    p_value = np.where(np.isfinite(p_value), p_value, 1.0)
    fdr = multipletests(p_value, method="fdr_bh")[1]

    result = pd.DataFrame(
        {
            "mean": mean,
            "total": total,
            "tech": tech,
            "bio": bio,
            "p_value": p_value,
            "FDR": fdr,
        },
        index=adata.var_names[genes],
    )

    for col in result.columns:
        adata.var[col] = np.nan
        adata.var.loc[result.index, col] = result[col].values

    result = result.sort_values("bio", ascending=False, kind="stable")

    print(f"  {(result['bio'] > 0).sum()} genes with positive biological variance")

    return result


def plot_mean_variance(adata, fit, save_dir=None):
    """Plot gene variances against means with the fitted technical trend

    Args:
        adata: AnnData object after ``decompose_variance``
        fit: VarianceFit from ``fit_variance_trend``
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    genes = ~adata.var["is_spike"].values

    fig, ax = plt.subplots(figsize=(7, 5))
    ax.scatter(
        adata.var.loc[genes, "mean"],
        adata.var.loc[genes, "total"],
        s=3,
        color="grey",
        alpha=0.5,
        label="Genes",
    )
    ax.scatter(fit.mean, fit.var, s=12, color="red", label="Trend points")

    grid = np.linspace(0, max(adata.var.loc[genes, "mean"].max(), fit.mean.max()), 200)
    ax.plot(grid, fit.trend(grid), color="dodgerblue", linewidth=2, label="Trend")

    ax.set_xlabel("Mean log-expression")
    ax.set_ylabel("Variance of log-expression")
    ax.legend()
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "mean_variance_trend.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/mean_variance_trend.png")
        plt.close(fig)
    else:
        plt.show()
