#!/usr/bin/env python3
"""
Normalization utilities for single-cell RNA-seq analysis
Handles pre-clustering, pooled size factors, spike-in size factors and log-normalization

Size factors follow the pooling and deconvolution approach of
Lun, Bach and Marioni (2016), Genome Biology 17:75.
"""

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import lsqr
from scipy.stats import rankdata
from sklearn.decomposition import PCA

from brain_scrna.analysis_params import CLUSTER_PARAMS, NORM_PARAMS, RANDOM_SEEDS
from brain_scrna.processing import build_snn_graph, walktrap_clusters
from brain_scrna.qc_utils import adjusted_average

# Weight of the equations tying each cell to its library size factor
LOW_WEIGHT = 1e-6


def _counts(adata, genes=None):
    counts = adata.layers["counts"] if "counts" in adata.layers else adata.X
    if genes is not None:
        counts = counts[:, genes]
    return sparse.csr_matrix(counts, dtype=np.float64)


def _merge_small_clusters(graph, labels, min_size):
    """Fold clusters below ``min_size`` into the cluster they share most weight with"""
    labels = labels.copy()
    while True:
        clusters, sizes = np.unique(labels, return_counts=True)
        if len(clusters) < 2 or sizes.min() >= min_size:
            break

        smallest = clusters[np.argmin(sizes)]
        members = labels == smallest
        others = clusters[clusters != smallest]

        links = np.array(
            [graph[members][:, labels == other].sum() for other in others]
        )
        if links.max() > 0:
            target = others[np.argmax(links)]
        else:
            target = others[np.argmax(sizes[clusters != smallest])]
        labels[members] = target

    # Renumber by decreasing size
    clusters, sizes = np.unique(labels, return_counts=True)
    order = clusters[np.argsort(-sizes, kind="stable")]
    mapping = {old: new for new, old in enumerate(order, start=1)}
    return np.array([mapping[label] for label in labels])


def quick_cluster(
    adata,
    min_mean=NORM_PARAMS["min_mean"],
    min_size=NORM_PARAMS["min_cluster_size"],
    random_state=RANDOM_SEEDS["quick_cluster"],
):
    """Coarse clustering of cells ahead of size factor estimation

    Cells are compared on their within-cell ranks of the non-spike genes with
    an average count of at least ``min_mean``, so that library size does not
    drive the grouping.

    Args:
        adata: AnnData object with raw counts in X (or ``counts`` layer)
        min_mean: Average count threshold for genes used
        min_size: Minimum number of cells per cluster
        random_state: Seed for the PCA

    Returns:
        numpy array of integer cluster labels, 1 for the largest cluster
    """
    print("Pre-clustering cells for normalization...")

    if adata.n_obs < 2 * min_size:
        print(f"  Only {adata.n_obs} cells, using a single cluster")
        return np.ones(adata.n_obs, dtype=int)

    counts = _counts(adata, genes=~adata.var["is_spike"].values)
    use = adjusted_average(counts) >= min_mean
    dense = counts[:, use].toarray()

    ranks = rankdata(dense, axis=1)
    ranks -= ranks.mean(axis=1, keepdims=True)
    norms = np.sqrt((ranks**2).sum(axis=1, keepdims=True))
    ranks = np.divide(ranks, norms, out=np.zeros_like(ranks), where=norms > 0)

    n_comps = min(50, min(ranks.shape) - 1)
    embedding = PCA(
        n_components=n_comps, svd_solver="randomized", random_state=random_state
    ).fit_transform(ranks)

    graph = build_snn_graph(embedding, k=CLUSTER_PARAMS["n_neighbors"])
    labels = walktrap_clusters(graph)
    labels = _merge_small_clusters(graph, labels, min_size)

    print(f"  {labels.max()} clusters of sizes {np.bincount(labels)[1:].tolist()}")

    return labels


def _ring_order(lib_sizes):
    """Cells sorted by library size, odd ranks up then even ranks down"""
    ordering = np.argsort(lib_sizes, kind="stable")
    return np.concatenate([ordering[0::2], ordering[1::2][::-1]])


def _deconvolve_cluster(normed, pseudo, lib_sizes, sizes):
    """Solve for per-cell normalization factors from pooled ratios

    Args:
        normed: cells x genes, counts divided by library size
        pseudo: Average of ``normed`` over cells
        lib_sizes: Library size of each cell, used to order the ring
        sizes: Pool sizes, none larger than the number of cells

    Returns:
        numpy array of normalization factors, one per cell
    """
    n_cells = normed.shape[0]
    ring = _ring_order(lib_sizes)

    rows, cols, rhs = [], [], []
    eq = 0
    for size in sizes:
        # Slide the pool one cell along the ring at a time
        pooled = normed[ring[:size]].sum(axis=0)
        for start in range(n_cells):
            if start:
                pooled += normed[ring[(start + size - 1) % n_cells]]
                pooled -= normed[ring[start - 1]]
            pool = ring[(start + np.arange(size)) % n_cells]
            rhs.append(np.median(pooled / pseudo))
            rows.extend([eq] * size)
            cols.extend(pool.tolist())
            eq += 1

    weight = np.sqrt(LOW_WEIGHT)
    rows.extend(range(eq, eq + n_cells))
    cols.extend(range(n_cells))
    rhs.extend([weight] * n_cells)

    values = np.concatenate([np.ones(len(rows) - n_cells), np.full(n_cells, weight)])
    design = sparse.csr_matrix((values, (rows, cols)), shape=(eq + n_cells, n_cells))

    return lsqr(design, np.asarray(rhs))[0]


def compute_sum_factors(
    adata,
    clusters=None,
    min_mean=NORM_PARAMS["min_mean"],
    sizes=NORM_PARAMS["pool_sizes"],
):
    """Pooled size factors for the endogenous genes

    Within each cluster, cells are summed in overlapping pools around a ring
    ordered by library size; each pool's median ratio to the cluster's
    average cell gives one equation, and the per-cell factors are the least
    squares solution. Clusters are put on a common scale by the median ratio
    of their average cells to the largest cluster's.

    Args:
        adata: AnnData object with raw counts in X (or ``counts`` layer)
        clusters: Cluster label per cell, e.g. from ``quick_cluster``
        min_mean: Average count threshold for genes used within a cluster
        sizes: Pool sizes

    Returns:
        AnnData object with ``size_factor`` (and ``quick_cluster``) in obs
    """
    print("Computing size factors...")

    if clusters is None:
        clusters = np.ones(adata.n_obs, dtype=int)
    clusters = np.asarray(clusters)

    counts = _counts(adata, genes=~adata.var["is_spike"].values)
    lib_sizes = np.asarray(counts.sum(axis=1)).ravel()
    if (lib_sizes <= 0).any():
        raise ValueError("cells with zero endogenous counts cannot be given size factors")

    size_factors = np.zeros(adata.n_obs)
    profiles = {}

    for cluster in np.unique(clusters):
        idx = np.flatnonzero(clusters == cluster)
        cur_libs = lib_sizes[idx]
        normed_all = counts[idx].toarray() / cur_libs[:, None]
        profiles[cluster] = (normed_all.mean(axis=0), len(idx))

        average = adjusted_average(counts[idx])
        keep = (average >= min_mean) & (average > 0)
        cluster_sizes = [s for s in sizes if s <= len(idx)]

        if keep.sum() == 0 or not cluster_sizes:
            print(f"  Cluster {cluster}: too small for pooling, using library sizes")
            size_factors[idx] = cur_libs
            continue

        normed = normed_all[:, keep]
        pseudo = normed.mean(axis=0)
        factors = _deconvolve_cluster(normed, pseudo, cur_libs, cluster_sizes)

        bad = factors <= 0
        if bad.any():
            print(
                f"  Warning: {bad.sum()} non-positive size factor(s) in cluster "
                f"{cluster}, replaced by library size factors"
            )
            factors[bad] = 1.0

        size_factors[idx] = factors * cur_libs

    # Put clusters on the scale of the largest one
    reference, _ = max(profiles.values(), key=lambda item: item[1])
    for cluster, (profile, _) in profiles.items():
        both = (profile > 0) & (reference > 0)
        if both.any():
            size_factors[clusters == cluster] *= np.median(profile[both] / reference[both])

    adata.obs["quick_cluster"] = clusters.astype(str)
    adata.obs["size_factor"] = size_factors / size_factors.mean()

    print(
        f"  Size factors range {adata.obs['size_factor'].min():.3f}"
        f" - {adata.obs['size_factor'].max():.3f}"
    )

    return adata


def compute_spike_factors(adata):
    """Size factors from the total spike-in count of each cell

    Args:
        adata: AnnData object with raw counts and ``is_spike`` in var

    Returns:
        AnnData object with ``spike_size_factor`` in obs
    """
    print("Computing spike-in size factors...")

    spikes = adata.var["is_spike"].values
    if not spikes.any():
        raise ValueError("no spike-in genes to compute spike-in size factors from")

    totals = np.asarray(_counts(adata, genes=spikes).sum(axis=1)).ravel()
    if (totals <= 0).any():
        raise ValueError(
            f"{(totals <= 0).sum()} cell(s) have no spike-in counts, "
            "spike-in size factors are undefined"
        )

    adata.obs["spike_size_factor"] = totals / totals.mean()

    return adata


def normalize_counts(adata, base=2, pseudocount=1):
    """Log-transform size-factor-scaled counts

    Endogenous and mitochondrial genes are scaled by ``size_factor``; spike-in
    genes by ``spike_size_factor`` when present. Raw counts are kept in the
    ``counts`` layer.

    Args:
        adata: AnnData object with raw counts in X and size factors in obs
        base: Logarithm base
        pseudocount: Added before taking the log

    Returns:
        AnnData object with log-expression values in X
    """
    print("Normalizing counts...")

    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    X = _counts(adata)
    size_factors = adata.obs["size_factor"].values.astype(float)
    if "spike_size_factor" in adata.obs:
        spike_factors = adata.obs["spike_size_factor"].values.astype(float)
    else:
        spike_factors = size_factors

    rows = np.repeat(np.arange(X.shape[0]), np.diff(X.indptr))
    spike_cols = adata.var["is_spike"].values[X.indices]
    factors = np.where(spike_cols, spike_factors[rows], size_factors[rows])

    X.data = np.log(X.data / factors + pseudocount) / np.log(base)
    adata.X = X.astype(np.float32)
    adata.uns["log1p"] = {"base": base}

    return adata
