"""Tests for denoised PCA, t-SNE, SNN graphs and clustering."""

import anndata
import igraph as ig
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from brain_scrna.processing import (
    _choose_n_pcs,
    build_snn_graph,
    cluster_modularity,
    denoise_pca,
    modularity_score,
    plot_cluster_modularity,
    run_snn_clustering,
    run_tsne,
    walktrap_clusters,
)


def _blobs(n_per_blob=30, n_dims=5, centers=(0.0, 20.0), seed=0):
    rng = np.random.default_rng(seed)
    points = [rng.normal(c, 1.0, size=(n_per_blob, n_dims)) for c in centers]
    labels = np.repeat(np.arange(len(centers)), n_per_blob)
    return np.vstack(points), labels


def _log_adata(n_per_group=20, n_genes=40, n_groups=3, seed=0):
    """Log-expression AnnData with group-specific genes and variance columns."""
    rng = np.random.default_rng(seed)
    n_cells = n_per_group * n_groups
    X = rng.normal(2.0, 0.3, size=(n_cells, n_genes))
    groups = np.repeat(np.arange(n_groups), n_per_group)
    for g in range(n_groups):
        X[np.ix_(groups == g, np.arange(g * 5, g * 5 + 5))] += 4

    var = pd.DataFrame(index=[f"Gene{i}" for i in range(n_genes)])
    var["is_spike"] = False
    var["tech"] = 0.05
    var["bio"] = X.var(axis=0, ddof=1) - 0.05

    obs = pd.DataFrame({"group": groups.astype(str)}, index=[f"cell_{i}" for i in range(n_cells)])
    return anndata.AnnData(X=X, obs=obs, var=var)


class TestChooseNPcs:
    """Tests for the number of retained PCs."""

    def test_drops_trailing_noise(self):
        assert _choose_n_pcs([5, 3, 1, 0.5, 0.5], tech_var=1.2, total_var=10) == 3

    def test_all_kept_when_noise_tiny(self):
        assert _choose_n_pcs([5, 3, 1], tech_var=0.0, total_var=9) == 3

    def test_unexplained_variance_counts_as_noise(self):
        """Variance outside the computed PCs already covers the noise."""
        assert _choose_n_pcs([5, 3, 1], tech_var=2.0, total_var=12) == 3


class TestDenoisePca:
    """Tests for denoised PCA."""

    def test_rank_within_bounds(self):
        adata = _log_adata()
        adata = denoise_pca(adata, min_rank=2, max_rank=20)

        n_pcs = adata.uns["denoise_pca"]["n_pcs"]
        assert 2 <= n_pcs <= 20
        assert adata.obsm["X_pca"].shape == (adata.n_obs, n_pcs)
        assert adata.uns["denoise_pca"]["tech_var"] == pytest.approx(0.05 * (adata.var["bio"] > 0).sum())

    def test_needs_biological_genes(self):
        adata = _log_adata()
        adata.var["bio"] = -1.0
        with pytest.raises(ValueError):
            denoise_pca(adata)


class TestRunTsne:
    """Tests for the t-SNE wrapper."""

    def test_perplexity_lowered_for_small_data(self, capsys):
        adata = _log_adata(n_per_group=14, n_groups=3)
        adata = denoise_pca(adata, min_rank=2, max_rank=10, approximate=False)

        adata = run_tsne(adata, perplexity=50)

        assert adata.obsm["X_tsne"].shape == (42, 2)
        assert "perplexity lowered to 13" in capsys.readouterr().out


class TestBuildSnnGraph:
    """Tests for the shared nearest-neighbor graph."""

    def test_rank_weights(self):
        """Weights are k - r/2; pairs with no useful shared neighbor are not linked."""
        graph = build_snn_graph(np.array([[0.0], [1.0], [10.0]]), k=1).toarray()

        assert graph[0, 1] == pytest.approx(0.5)
        assert graph[1, 2] == pytest.approx(0.5)
        assert graph[0, 2] == 0
        np.testing.assert_array_equal(graph, graph.T)
        assert (np.diag(graph) == 0).all()

    def test_separated_blobs_not_linked(self):
        points, labels = _blobs()
        graph = build_snn_graph(points, k=10)

        coo = graph.tocoo()
        assert (labels[coo.row] == labels[coo.col]).all()
        assert (coo.data > 0).all()
        assert coo.data.max() <= 10


class TestWalktrapClusters:
    """Tests for walktrap clustering."""

    def test_two_blobs(self):
        """Clusters never span both blobs and are numbered by decreasing size."""
        points, labels = _blobs(n_per_blob=40)
        points = np.vstack([points, np.random.default_rng(1).normal(0, 1, size=(10, 5))])
        labels = np.concatenate([labels, np.zeros(10, dtype=int)])

        clusters = walktrap_clusters(build_snn_graph(points, k=10))

        assert clusters.min() == 1
        assert set(clusters) == set(range(1, clusters.max() + 1))
        sizes = np.bincount(clusters)[1:]
        assert (np.diff(sizes) <= 0).all()
        for c in np.unique(clusters):
            assert len(set(labels[clusters == c])) == 1


class TestClusterModularity:
    """Tests for cluster-level modularity tables."""

    def test_matches_newman_modularity(self):
        points, _ = _blobs(centers=(0.0, 3.0, 6.0))
        graph = build_snn_graph(points, k=8)
        clusters = walktrap_clusters(graph)

        observed, expected = cluster_modularity(graph, clusters)

        upper = sparse.triu(graph, k=1).tocoo()
        g = ig.Graph(n=graph.shape[0], edges=list(zip(upper.row.tolist(), upper.col.tolist())))
        reference = g.modularity((clusters - 1).tolist(), weights=upper.data.tolist())

        assert modularity_score(observed, expected) == pytest.approx(reference)

    def test_tables_share_total_weight(self):
        points, _ = _blobs()
        graph = build_snn_graph(points, k=10)
        labels = np.repeat(["1", "2", "3"], 20)

        observed, expected = cluster_modularity(graph, labels)

        total = graph.sum() / 2
        assert observed.values.sum() == pytest.approx(total)
        assert expected.values.sum() == pytest.approx(total)
        assert (np.tril(observed.values, k=-1) == 0).all()
        assert list(observed.index) == ["1", "2", "3"]

    def test_heatmap_saved(self, tmp_path):
        points, labels = _blobs()
        graph = build_snn_graph(points, k=10)
        observed, expected = cluster_modularity(graph, labels + 1)

        plot_cluster_modularity(observed, expected, save_dir=tmp_path)
        assert (tmp_path / "cluster_modularity.png").exists()


class TestRunSnnClustering:
    """Tests for clustering on the denoised PCs."""

    def test_cluster_column(self):
        adata = _log_adata(n_per_group=30)
        adata = denoise_pca(adata, min_rank=2, max_rank=20)

        adata = run_snn_clustering(adata)

        assert "snn" in adata.obsp
        assert adata.obs["cluster"].dtype.name == "category"
        categories = list(adata.obs["cluster"].cat.categories)
        assert categories == [str(i) for i in range(1, len(categories) + 1)]
        assert len(categories) >= 3
        sizes = adata.obs["cluster"].value_counts().reindex(categories)
        assert sizes.is_monotonic_decreasing
        crosstab = pd.crosstab(adata.obs["cluster"], adata.obs["group"])
        assert ((crosstab > 0).sum(axis=1) == 1).all()
