#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles denoised PCA, t-SNE, shared nearest-neighbor graphs and walktrap clustering
"""

import igraph as ig
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from brain_scrna.analysis_params import CLUSTER_PARAMS, RANDOM_SEEDS


def _choose_n_pcs(var_exp, tech_var, total_var):
    """Number of leading PCs to keep so that the rest explains about tech_var"""
    var_exp = np.asarray(var_exp, dtype=float)
    npcs = len(var_exp)
    # Variance left behind when dropping the trailing PCs, smallest first
    estimated_contrib = np.cumsum(var_exp[::-1]) + (total_var - var_exp.sum())
    above_noise = np.flatnonzero(estimated_contrib > tech_var)
    if len(above_noise):
        return npcs - above_noise[0]
    return npcs


def denoise_pca(
    adata,
    approximate=CLUSTER_PARAMS["approximate"],
    min_rank=CLUSTER_PARAMS["min_rank"],
    max_rank=CLUSTER_PARAMS["max_rank"],
    random_state=RANDOM_SEEDS["pca"],
):
    """PCA keeping as many PCs as needed to leave only technical noise behind

    Uses the genes with a positive biological component from
    ``decompose_variance``; their summed technical variance sets the number of
    discarded PCs.

    Args:
        adata: Normalized AnnData object with ``bio`` and ``tech`` in var
        approximate: Use ARPACK instead of a full SVD
        min_rank: Minimum number of PCs to keep
        max_rank: Maximum number of PCs to compute
        random_state: Seed for the eigen-solver

    Returns:
        AnnData object with ``X_pca`` in obsm and ``denoise_pca`` in uns
    """
    print("Running denoised PCA...")

    use = (adata.var["bio"] > 0).values
    if use.sum() < 2:
        raise ValueError("denoise_pca needs at least two genes with positive biological variance")

    sub = adata[:, use].copy()
    if sparse.issparse(sub.X):
        sub.X = sub.X.toarray()

    total_var = float(np.var(sub.X, axis=0, ddof=1).sum())
    tech_var = float(adata.var.loc[use, "tech"].sum())

    n_comps = min(max_rank, min(sub.shape) - 1)
    sc.tl.pca(
        sub,
        n_comps=n_comps,
        svd_solver="arpack" if approximate else "full",
        zero_center=True,
        random_state=random_state,
    )
    var_exp = sub.uns["pca"]["variance"]

    n_pcs = _choose_n_pcs(var_exp, tech_var, total_var)
    n_pcs = int(min(max(n_pcs, min_rank), n_comps))

    adata.obsm["X_pca"] = sub.obsm["X_pca"][:, :n_pcs]
    adata.uns["denoise_pca"] = {
        "n_pcs": n_pcs,
        "variance": np.asarray(var_exp[:n_pcs]),
        "total_var": total_var,
        "tech_var": tech_var,
    }

    print(f"  Kept {n_pcs} PCs from {use.sum()} genes")

    return adata


def run_tsne(
    adata,
    perplexity=CLUSTER_PARAMS["tsne_perplexity"],
    random_state=RANDOM_SEEDS["tsne"],
):
    """t-SNE on the denoised PCs

    Args:
        adata: AnnData object with ``X_pca`` in obsm
        perplexity: t-SNE perplexity, lowered if the dataset is too small
        random_state: Seed for t-SNE

    Returns:
        AnnData object with ``X_tsne`` in obsm
    """
    print("Running t-SNE...")

    max_perplexity = (adata.n_obs - 1) / 3
    if perplexity > max_perplexity:
        perplexity = max(1.0, np.floor(max_perplexity))
        print(f"  Too few cells, perplexity lowered to {perplexity}")

    sc.tl.tsne(adata, use_rep="X_pca", perplexity=perplexity, random_state=random_state)

    return adata


def build_snn_graph(embedding, k=CLUSTER_PARAMS["n_neighbors"]):
    """Shared nearest-neighbor graph with rank-based edge weights

    Two cells are connected if they share any of their ``k`` nearest neighbors
    (each cell counts as its own neighbor of rank 0). The weight is
    ``k - r / 2``, where ``r`` is the smallest sum of the shared neighbor's
    ranks in both cells' lists.

    Args:
        embedding: cells x dimensions array
        k: Number of nearest neighbors

    Returns:
        Symmetric scipy CSR matrix of edge weights
    """
    embedding = np.asarray(embedding)
    n_cells = embedding.shape[0]
    k = min(k, n_cells - 1)

    nn = NearestNeighbors(n_neighbors=k + 1).fit(embedding)
    _, indices = nn.kneighbors(embedding)

    # For each neighbor u, the cells listing it and the rank it has there
    holders = [[] for _ in range(n_cells)]
    for cell in range(n_cells):
        neighbors = [j for j in indices[cell] if j != cell][:k]
        holders[cell].append((cell, 0))
        for rank, neighbor in enumerate(neighbors, start=1):
            holders[neighbor].append((cell, rank))

    best = {}
    for listed in holders:
        for a in range(len(listed)):
            i, rank_i = listed[a]
            for b in range(a + 1, len(listed)):
                j, rank_j = listed[b]
                key = (i, j) if i < j else (j, i)
                combined = rank_i + rank_j
                if combined < best.get(key, np.inf):
                    best[key] = combined

    rows, cols, weights = [], [], []
    for (i, j), combined in best.items():
        weight = k - combined / 2
        if weight > 0:
            rows.extend((i, j))
            cols.extend((j, i))
            weights.extend((weight, weight))

    return sparse.csr_matrix((weights, (rows, cols)), shape=(n_cells, n_cells))


def walktrap_clusters(graph, steps=CLUSTER_PARAMS["walktrap_steps"]):
    """Walktrap community detection on a weighted graph

    Args:
        graph: Symmetric sparse matrix of edge weights
        steps: Random walk length

    Returns:
        numpy array of integer labels, 1 for the largest cluster
    """
    upper = sparse.triu(graph, k=1).tocoo()
    g = ig.Graph(
        n=graph.shape[0],
        edges=list(zip(upper.row.tolist(), upper.col.tolist())),
        directed=False,
    )
    g.es["weight"] = upper.data.tolist()

    membership = np.asarray(
        g.community_walktrap(weights="weight", steps=steps).as_clustering().membership
    )

    # Number clusters by decreasing size
    sizes = np.bincount(membership)
    order = np.argsort(-sizes, kind="stable")
    relabel = np.empty_like(order)
    relabel[order] = np.arange(1, len(order) + 1)

    return relabel[membership]


def cluster_modularity(graph, labels):
    """Observed and expected edge weight between each pair of clusters

    Only the upper triangle (including the diagonal) is filled. Under the
    null, the expected weight is proportional to the product of the clusters'
    total degrees; both tables sum to the total edge weight.

    Args:
        graph: Symmetric sparse matrix of edge weights
        labels: Cluster label per cell

    Returns:
        Tuple of (observed, expected) cluster x cluster DataFrames
    """
    labels = pd.Categorical(labels)
    n_cells = len(labels)
    n_clusters = len(labels.categories)

    indicator = sparse.csr_matrix(
        (np.ones(n_cells), (np.arange(n_cells), labels.codes)),
        shape=(n_cells, n_clusters),
    )
    between = np.asarray((indicator.T @ sparse.csr_matrix(graph) @ indicator).todense())

    total = between.sum() / 2
    degree = between.sum(axis=1)

    observed = np.triu(between)
    observed[np.diag_indices(n_clusters)] /= 2

    expected = np.triu(np.outer(degree, degree)) / (2 * total)
    expected[np.diag_indices(n_clusters)] /= 2

    names = [str(c) for c in labels.categories]
    return (
        pd.DataFrame(observed, index=names, columns=names),
        pd.DataFrame(expected, index=names, columns=names),
    )


def modularity_score(observed, expected):
    """Newman modularity from the tables of ``cluster_modularity``"""
    total = observed.values.sum()
    return float((np.diag(observed.values) - np.diag(expected.values)).sum() / total)


def run_snn_clustering(
    adata,
    n_neighbors=CLUSTER_PARAMS["n_neighbors"],
    steps=CLUSTER_PARAMS["walktrap_steps"],
    use_rep="X_pca",
):
    """Cluster cells on an SNN graph built in the denoised PC space

    Args:
        adata: AnnData object with ``use_rep`` in obsm
        n_neighbors: k for the SNN graph
        steps: Walktrap random walk length
        use_rep: Embedding to build the graph on

    Returns:
        AnnData object with ``snn`` in obsp and ``cluster`` in obs
    """
    print("Computing shared nearest-neighbor graph...")
    graph = build_snn_graph(adata.obsm[use_rep], k=n_neighbors)
    adata.obsp["snn"] = graph

    print("Clustering...")
    labels = walktrap_clusters(graph, steps=steps)
    categories = [str(i) for i in range(1, labels.max() + 1)]
    adata.obs["cluster"] = pd.Categorical(labels.astype(str), categories=categories)

    print("Cluster sizes:")
    print(adata.obs["cluster"].value_counts().sort_index().to_string())

    return adata


def run_pca_tsne_clustering(adata, save_dir=None):
    """Run denoised PCA, t-SNE and SNN clustering

    Args:
        adata: Normalized AnnData object with variance decomposition in var
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.

    Returns:
        AnnData object with embeddings and clusters
    """
    adata = denoise_pca(adata)
    adata = run_tsne(adata)
    adata = run_snn_clustering(adata)

    observed, expected = cluster_modularity(adata.obsp["snn"], adata.obs["cluster"])
    print(f"  Modularity: {modularity_score(observed, expected):.3f}")
    plot_cluster_modularity(observed, expected, save_dir=save_dir)

    return adata


def plot_tsne(adata, colors=("cluster", "tissue", "pct_counts_is_mito"), save_dir=None):
    """Plot the t-SNE embedding colored by cluster and metadata

    Args:
        adata: AnnData object with t-SNE coordinates
        colors: obs columns or genes to color by; missing ones are skipped
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting embeddings...")

    colors = [c for c in colors if c in adata.obs or c in adata.var_names]
    fig, axes = plt.subplots(1, len(colors), figsize=(6 * len(colors), 5), squeeze=False)

    for color, ax in zip(colors, axes[0]):
        sc.pl.tsne(adata, color=color, title=color, ax=ax, show=False)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "tsne_embeddings.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/tsne_embeddings.png")
        plt.close(fig)
    else:
        plt.show()


def plot_cluster_modularity(observed, expected, save_dir=None):
    """Heatmap of log2(observed / expected + 1) edge weight between clusters

    Args:
        observed: Observed weights from ``cluster_modularity``
        expected: Expected weights from ``cluster_modularity``
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.log2(observed / expected.where(expected > 0) + 1)

    fig, ax = plt.subplots(figsize=(8, 7))
    sns.heatmap(ratio, cmap="viridis", cbar_kws={"label": "log2(obs/exp + 1)"}, ax=ax)
    ax.set_title("Cluster modularity")
    ax.set_xlabel("Cluster")
    ax.set_ylabel("Cluster")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "cluster_modularity.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/cluster_modularity.png")
        plt.close(fig)
    else:
        plt.show()
