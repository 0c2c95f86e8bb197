"""Tests for size factors and log-normalization."""

import numpy as np
import pytest

from brain_scrna.normalization import (
    _ring_order,
    compute_spike_factors,
    compute_sum_factors,
    normalize_counts,
    quick_cluster,
)


class TestRingOrder:
    """Tests for the library size ring."""

    def test_small_cells_adjacent_to_large_at_wrap(self):
        """Ascending odd ranks then descending even ranks."""
        libs = np.array([50, 10, 40, 20, 30])
        # Sorted cell order: 1, 3, 4, 2, 0
        assert _ring_order(libs).tolist() == [1, 4, 0, 2, 3]


class TestComputeSumFactors:
    """Tests for pooled size factors."""

    def test_tracks_sequencing_depth(self, make_adata):
        """Without composition differences the factors follow the depth."""
        rng = np.random.default_rng(1)
        scale = rng.uniform(0.5, 2.0, 150)
        adata = make_adata(n_cells=150, scale=scale, seed=1)

        adata = compute_sum_factors(adata)
        sf = adata.obs["size_factor"].values

        assert sf.mean() == pytest.approx(1.0)
        assert (sf > 0).all()
        assert np.corrcoef(sf, scale)[0, 1] > 0.95

    def test_clusters_rescaled_against_composition_bias(self, make_adata):
        """Up-regulation of a minority of genes in one cluster does not inflate its factors."""
        rng = np.random.default_rng(2)
        scale = rng.uniform(0.5, 2.0, 240)
        adata = make_adata(n_cells=240, scale=scale, seed=2)

        X = adata.X.toarray()
        group_b = np.arange(240) >= 120
        X[np.ix_(group_b, np.arange(40))] *= 5
        adata.X = X
        clusters = np.where(group_b, 2, 1)

        adata = compute_sum_factors(adata, clusters=clusters)
        ratio = adata.obs["size_factor"].values / scale

        bias = ratio[group_b].mean() / ratio[~group_b].mean()
        assert bias == pytest.approx(1.0, abs=0.15)
        assert adata.obs["quick_cluster"].nunique() == 2

    def test_small_cluster_uses_library_size(self, make_adata):
        """Clusters smaller than every pool fall back to library sizes."""
        adata = make_adata(n_cells=10)
        adata = compute_sum_factors(adata)

        X = adata.X.toarray()[:, ~adata.var["is_spike"].values]
        libs = X.sum(axis=1)
        np.testing.assert_allclose(adata.obs["size_factor"], libs / libs.mean())

    def test_zero_library_raises(self, make_adata):
        adata = make_adata(n_cells=30)
        X = adata.X.toarray()
        X[0, ~adata.var["is_spike"].values] = 0
        adata.X = X

        with pytest.raises(ValueError):
            compute_sum_factors(adata)


class TestQuickCluster:
    """Tests for pre-clustering."""

    def test_too_few_cells_single_cluster(self, make_adata):
        adata = make_adata(n_cells=50)
        labels = quick_cluster(adata, min_size=100)
        assert (labels == 1).all()

    def test_separates_distinct_populations(self, make_adata):
        """No cluster mixes two populations expressing different genes."""
        adata = make_adata(n_cells=240, n_genes=200, gene_mean=1, seed=3)
        rng = np.random.default_rng(3)
        X = adata.X.toarray()
        group_b = np.arange(240) >= 120
        X[np.ix_(~group_b, np.arange(100))] = rng.poisson(50, size=(120, 100))
        X[np.ix_(group_b, np.arange(100, 200))] = rng.poisson(50, size=(120, 100))
        adata.X = X

        labels = quick_cluster(adata, min_size=50)

        for label in np.unique(labels):
            members = group_b[labels == label]
            assert members.all() or not members.any()
            assert (labels == label).sum() >= 50


class TestSpikeFactors:
    """Tests for spike-in size factors."""

    def test_proportional_to_spike_totals(self, counts_adata):
        adata = compute_spike_factors(counts_adata)

        totals = counts_adata.X.toarray()[:, counts_adata.var["is_spike"].values].sum(axis=1)
        np.testing.assert_allclose(adata.obs["spike_size_factor"], totals / totals.mean())

    def test_no_spike_counts_raises(self, counts_adata):
        X = counts_adata.X.toarray()
        X[0, counts_adata.var["is_spike"].values] = 0
        counts_adata.X = X

        with pytest.raises(ValueError):
            compute_spike_factors(counts_adata)


class TestNormalizeCounts:
    """Tests for log-normalization."""

    def test_log2_with_separate_spike_factors(self, counts_adata):
        """Endogenous genes use size_factor, spike-ins spike_size_factor."""
        raw = counts_adata.X.toarray().copy()
        n = counts_adata.n_obs
        counts_adata.obs["size_factor"] = np.linspace(0.5, 1.5, n)
        counts_adata.obs["spike_size_factor"] = np.linspace(1.5, 0.5, n)

        adata = normalize_counts(counts_adata)
        X = adata.X.toarray()

        spike_col = int(np.flatnonzero(adata.var["is_spike"].values)[0])
        np.testing.assert_allclose(X[3, 0], np.log2(raw[3, 0] / adata.obs["size_factor"].iloc[3] + 1), rtol=1e-5)
        np.testing.assert_allclose(
            X[3, spike_col],
            np.log2(raw[3, spike_col] / adata.obs["spike_size_factor"].iloc[3] + 1),
            rtol=1e-5,
        )
        np.testing.assert_array_equal(adata.layers["counts"].toarray(), raw)
        assert adata.uns["log1p"]["base"] == 2
