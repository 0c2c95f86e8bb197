#!/usr/bin/env python3
"""
Marker gene utilities for single-cell RNA-seq analysis
Handles pairwise cluster comparisons, marker ranking and marker heatmaps
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from brain_scrna.analysis_params import MARKER_PARAMS

ALTERNATIVES = {"up": "greater", "down": "less", "any": "two-sided"}


def _dense(X):
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


def _group_stats(X, labels, groups):
    """Mean, standard deviation and size of each group, genes in columns"""
    means, stds, sizes = {}, {}, {}
    for group in groups:
        values = X[labels == group]
        sizes[group] = values.shape[0]
        means[group] = values.mean(axis=0)
        if values.shape[0] > 1:
            stds[group] = values.std(axis=0, ddof=1)
        else:
            stds[group] = np.full(values.shape[1], np.nan)
    return means, stds, sizes


def _simes(p_values):
    """Simes combination across columns of a genes x comparisons array"""
    ordered = np.sort(p_values, axis=1)
    m = ordered.shape[1]
    return np.min(ordered * m / np.arange(1, m + 1), axis=1).clip(max=1.0)


def find_markers(
    adata,
    groupby="cluster",
    direction=MARKER_PARAMS["direction"],
    include_spikes=False,
):
    """Rank marker genes for each group by pairwise Welch t-tests

    Every group is compared with every other group. Within one comparison
    genes are ranked by p-value; a gene's ``Top`` value is its best rank over
    all comparisons, so the genes with ``Top <= T`` are the union of the top
    ``T`` genes of each comparison.

    Args:
        adata: Normalized AnnData object with log-expression in X
        groupby: obs column with group labels
        direction: "up", "down" or "any"
        include_spikes: Whether spike-in genes are tested

    Returns:
        Dict of group -> DataFrame indexed by gene, sorted by ``Top`` and
        p-value, with ``Top``, ``p.value``, ``FDR`` and one ``logFC.<other>``
        column per comparison
    """
    print("Finding marker genes...")

    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    genes = np.ones(adata.n_vars, dtype=bool)
    if not include_spikes and "is_spike" in adata.var:
        genes = ~adata.var["is_spike"].values

    labels = adata.obs[groupby].astype(str).values
    if hasattr(adata.obs[groupby], "cat"):
        groups = [str(g) for g in adata.obs[groupby].cat.categories if str(g) in set(labels)]
    else:
        groups = list(pd.unique(labels))
    if len(groups) < 2:
        raise ValueError("find_markers needs at least two groups")

    X = _dense(adata.X[:, genes])
    gene_names = adata.var_names[genes]
    means, stds, sizes = _group_stats(X, labels, groups)
    alternative = ALTERNATIVES[direction]

    markers = {}
    for target in groups:
        others = [g for g in groups if g != target]
        p_values = np.empty((len(gene_names), len(others)))
        ranks = np.empty((len(gene_names), len(others)), dtype=int)
        log_fc = {}

        for j, other in enumerate(others):
            with np.errstate(divide="ignore", invalid="ignore"):
                _, p = stats.ttest_ind_from_stats(
                    means[target],
                    stds[target],
                    sizes[target],
                    means[other],
                    stds[other],
                    sizes[other],
                    equal_var=False,
                    alternative=alternative,
                )
            p = np.where(np.isfinite(p), p, 1.0)
            p_values[:, j] = p

            order = np.argsort(p, kind="stable")
            ranks[order, j] = np.arange(1, len(p) + 1)
            log_fc[f"logFC.{other}"] = means[target] - means[other]

        combined = _simes(p_values)
        table = pd.DataFrame(
            {
                "Top": ranks.min(axis=1),
                "p.value": combined,
                "FDR": multipletests(combined, method="fdr_bh")[1],
                **log_fc,
            },
            index=gene_names,
        )
        markers[target] = table.sort_values(["Top", "p.value"], kind="stable")

    return markers


def select_marker_genes(marker_table, top=MARKER_PARAMS["top"]):
    """Genes ranked within the top ``top`` of at least one comparison"""
    return list(marker_table.index[marker_table["Top"] <= top])


def report_markers(markers, group, n_genes=10, n_cols=8):
    """Print and return the head of one group's marker table"""
    head = markers[group].iloc[:n_genes, :n_cols]
    print(f"\nTop markers for cluster {group}:")
    print(head.to_string())
    return head


def prepare_heatmap_matrix(
    adata, genes, groupby="cluster", zlim=MARKER_PARAMS["zlim"], center=True
):
    """Expression of ``genes`` with cells ordered by group

    Args:
        adata: Normalized AnnData object with log-expression in X
        genes: Genes to include, in row order
        groupby: obs column used to order cells
        zlim: Values are clipped to [-zlim, zlim]
        center: Subtract each gene's mean expression

    Returns:
        genes x cells DataFrame
    """
    labels = adata.obs[groupby]
    codes = labels.cat.codes.values if hasattr(labels, "cat") else pd.factorize(labels)[0]
    order = np.argsort(codes, kind="stable")

    values = _dense(adata[:, list(genes)].X)[order].T
    if center:
        values = values - values.mean(axis=1, keepdims=True)
    values = np.clip(values, -zlim, zlim)

    return pd.DataFrame(values, index=list(genes), columns=adata.obs_names[order])


def plot_marker_heatmap(
    adata,
    genes,
    groupby="cluster",
    zlim=MARKER_PARAMS["zlim"],
    save_dir=None,
    filename="marker_heatmap.png",
):
    """Clustered heatmap of marker genes with cells ordered by group

    Args:
        adata: Normalized AnnData object with log-expression in X
        genes: Marker genes to plot
        groupby: obs column used to order and color cells
        zlim: Color scale limit of the centered values
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
        filename: Output file name inside ``save_dir``
    """
    print("Plotting marker heatmap...")

    matrix = prepare_heatmap_matrix(adata, genes, groupby=groupby, zlim=zlim)

    labels = adata.obs.loc[matrix.columns, groupby].astype(str)
    groups = list(pd.unique(labels))
    palette = dict(zip(groups, sns.color_palette("tab20", len(groups))))
    col_colors = pd.Series(
        [palette[label] for label in labels], index=matrix.columns, name=groupby
    )

    grid = sns.clustermap(
        matrix,
        row_cluster=matrix.shape[0] > 1,
        col_cluster=False,
        col_colors=col_colors,
        cmap="RdBu_r",
        vmin=-zlim,
        vmax=zlim,
        center=0,
        xticklabels=False,
        yticklabels=True,
        figsize=(12, max(6, 0.2 * matrix.shape[0])),
    )
    grid.ax_heatmap.set_xlabel(f"Cells (ordered by {groupby})")

    if save_dir:
        grid.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{filename}")
        plt.close(grid.fig)
    else:
        plt.show()

    return grid
