#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation, MAD-based outlier removal, and gene abundance filtering
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from scipy.stats import median_abs_deviation

from brain_scrna.analysis_params import QC_PARAMS


def calculate_qc_metrics(adata):
    """Calculate per-cell QC metrics

    Adds ``total_counts``, ``n_genes_by_counts``, ``pct_counts_is_spike`` and
    ``pct_counts_is_mito`` to adata.obs.

    Args:
        adata: AnnData object with ``is_spike`` and ``is_mito`` flags in var

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["is_spike", "is_mito"],
        percent_top=None,
        log1p=False,
        inplace=True,
    )

    return adata


def is_outlier(values, nmads=3, type="both", log=False):
    """Flag values more than ``nmads`` MADs away from the median

    Args:
        values: 1D array of metric values
        nmads: Number of (normal-scaled) MADs defining the threshold
        type: "lower", "higher" or "both"
        log: Whether to compute the thresholds on the log scale

    Returns:
        Boolean numpy array, True for outliers
    """
    values = np.asarray(values, dtype=float)
    if log:
        with np.errstate(divide="ignore"):
            values = np.log(values)

    finite = values[np.isfinite(values)]
    center = np.median(finite)
    spread = median_abs_deviation(finite, scale="normal")

    lower = center - nmads * spread
    upper = center + nmads * spread

    outliers = np.zeros(values.shape, dtype=bool)
    if type in ("lower", "both"):
        outliers |= values < lower
    if type in ("higher", "both"):
        outliers |= values > upper

    return outliers


def find_qc_outliers(adata, nmads=QC_PARAMS["nmads"]):
    """Flag low-quality cells by library size, feature count and spike-in share

    Args:
        adata: AnnData object with QC metrics
        nmads: Number of MADs for each threshold

    Returns:
        DataFrame indexed by cell with one boolean column per criterion
    """
    return pd.DataFrame(
        {
            "libsize_drop": is_outlier(
                adata.obs["total_counts"], nmads=nmads, type="lower", log=True
            ),
            "feature_drop": is_outlier(
                adata.obs["n_genes_by_counts"], nmads=nmads, type="lower", log=True
            ),
            "spike_drop": is_outlier(
                adata.obs["pct_counts_is_spike"], nmads=nmads, type="higher"
            ),
        },
        index=adata.obs_names,
    )


def filter_outlier_cells(adata, nmads=QC_PARAMS["nmads"]):
    """Remove cells flagged by any QC criterion

    Args:
        adata: AnnData object with QC metrics
        nmads: Number of MADs for each threshold

    Returns:
        Tuple of (filtered AnnData, summary DataFrame of removed cells)
    """
    print("Removing low-quality cells...")
    print(f"Starting with {adata.n_obs} cells")

    drops = find_qc_outliers(adata, nmads=nmads)
    discard = drops.any(axis=1).values

    adata = adata[~discard].copy()

    summary = pd.DataFrame(
        {
            "ByLibSize": [int(drops["libsize_drop"].sum())],
            "ByFeature": [int(drops["feature_drop"].sum())],
            "BySpike": [int(drops["spike_drop"].sum())],
            "Remaining": [adata.n_obs],
        }
    )
    print(summary.to_string(index=False))

    return adata, summary


def adjusted_average(counts):
    """Per-gene average after scaling each cell by its centred library size

    Args:
        counts: cells x genes matrix (dense or sparse)

    Returns:
        numpy array of per-gene averages
    """
    lib_sizes = np.asarray(counts.sum(axis=1)).ravel().astype(float)
    size_factors = lib_sizes / lib_sizes.mean()

    if sparse.issparse(counts):
        scaled = sparse.diags(1.0 / size_factors) @ counts
    else:
        scaled = np.asarray(counts) / size_factors[:, None]

    return np.asarray(scaled.mean(axis=0)).ravel()


def calculate_average_counts(adata, layer=None):
    """Average count per gene after library size adjustment

    Args:
        adata: AnnData object with raw counts in X (or ``layer``)
        layer: Optional layer holding the counts

    Returns:
        numpy array of per-gene averages
    """
    counts = adata.layers[layer] if layer else adata.X
    return adjusted_average(counts)


def filter_low_abundance_genes(adata, min_average=QC_PARAMS["min_average_count"]):
    """Remove genes whose average adjusted count is not above ``min_average``

    Args:
        adata: AnnData object with raw counts in X
        min_average: Average count threshold

    Returns:
        Filtered AnnData object with ``ave_count`` in var
    """
    print("Filtering low-abundance genes...")

    adata.var["ave_count"] = calculate_average_counts(adata)
    keep = adata.var["ave_count"].values > min_average

    print(f"  Keeping {keep.sum()} of {adata.n_vars} genes")

    return adata[:, keep].copy()


def plot_qc_histograms(adata, save_dir=None):
    """Plot histograms of the per-cell QC metrics

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    fig, axes = plt.subplots(2, 2, figsize=(12, 8))

    metrics = [
        ("total_counts", "Library sizes (thousands)", 1e3, axes[0, 0]),
        ("n_genes_by_counts", "Number of expressed genes", 1, axes[0, 1]),
        ("pct_counts_is_mito", "Mitochondrial proportion (%)", 1, axes[1, 0]),
        ("pct_counts_is_spike", "ERCC proportion (%)", 1, axes[1, 1]),
    ]

    for metric, label, scale, ax in metrics:
        ax.hist(adata.obs[metric] / scale, bins=20, color="grey")
        ax.set_xlabel(label)
        ax.set_ylabel("Number of cells")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_histograms.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_histograms.png")
        plt.close(fig)
    else:
        plt.show()


def plot_highest_expressed(adata, n_top=50, save_dir=None):
    """Plot the genes taking the largest share of counts

    Args:
        adata: AnnData object with raw counts in X
        n_top: Number of genes to show
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    n_top = min(n_top, adata.n_vars)
    sc.pl.highest_expr_genes(adata, n_top=n_top, show=False)
    fig = plt.gcf()

    if save_dir:
        fig.savefig(save_dir / "highest_expressed.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/highest_expressed.png")
        plt.close(fig)
    else:
        plt.show()
