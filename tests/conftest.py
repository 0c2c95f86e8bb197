"""Pytest configuration and fixtures."""

import matplotlib

matplotlib.use("Agg")

import anndata
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

METADATA_FIELDS = [
    "tissue",
    "group #",
    "total mRNA mol",
    "well",
    "sex",
    "age",
    "diameter",
    "cell_id",
    "level1class",
    "level2class",
]


def _write_expression_file(path, cell_ids, genes, counts, tissue="sscortex"):
    """Write counts (genes x cells) in the Zeisel text layout."""
    n_cells = len(cell_ids)
    lines = []
    for field in METADATA_FIELDS:
        if field == "cell_id":
            values = list(cell_ids)
        elif field == "tissue":
            values = [tissue] * n_cells
        elif field == "well":
            values = [str(i + 1) for i in range(n_cells)]
        else:
            values = [f"{field}_{i}" for i in range(n_cells)]
        lines.append("\t".join(["", field] + values))

    lines.append("\t".join(["cell_id", "cluster"] + [""] * n_cells))

    for gene, row in zip(genes, counts):
        lines.append("\t".join([gene, "1"] + [str(int(v)) for v in row]))

    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def write_expression_file():
    """Writer for small expression files in the Zeisel layout."""
    return _write_expression_file


@pytest.fixture
def tiny_sources(tmp_path):
    """Three 4-cell x 3-gene files; the mito file has its cells shuffled."""
    cells = ["c1", "c2", "c3", "c4"]
    endo = np.array([[1, 2, 3, 4], [10, 20, 30, 40], [0, 1, 0, 1]])
    mito = np.array([[5, 6, 7, 8], [1, 1, 1, 1], [2, 4, 6, 8]])
    spike = np.array([[3, 3, 3, 3], [9, 8, 7, 6], [1, 0, 1, 0]])

    shuffled = [2, 0, 3, 1]

    _write_expression_file(
        tmp_path / "expression_mRNA_17-Aug-2014.txt", cells, ["Snap25", "Gad1", "Aqp4"], endo
    )
    _write_expression_file(
        tmp_path / "expression_mito_17-Aug-2014.txt",
        [cells[i] for i in shuffled],
        ["mt-Co1", "mt-Nd1", "mt-Atp6"],
        mito[:, shuffled],
    )
    _write_expression_file(
        tmp_path / "expression_spikes_17-Aug-2014.txt",
        cells,
        ["ERCC-00002", "ERCC-00003", "ERCC-00004"],
        spike,
    )

    return {"dir": tmp_path, "cells": cells, "endo": endo, "mito": mito, "spike": spike}


def make_counts_adata(
    n_cells=60,
    n_genes=200,
    n_mito=5,
    n_spikes=10,
    gene_mean=50,
    spike_mean=20,
    scale=None,
    seed=0,
):
    """Poisson counts AnnData with is_spike / is_mito flags, cells x genes."""
    rng = np.random.default_rng(seed)
    if scale is None:
        scale = np.ones(n_cells)

    endo = rng.poisson(gene_mean * scale[:, None], size=(n_cells, n_genes))
    mito = rng.poisson(gene_mean * scale[:, None], size=(n_cells, n_mito))
    spike = rng.poisson(spike_mean, size=(n_cells, n_spikes))

    names = (
        [f"Gene{i}" for i in range(n_genes)]
        + [f"mt-Gene{i}" for i in range(n_mito)]
        + [f"ERCC-{i:05d}" for i in range(n_spikes)]
    )
    var = pd.DataFrame(index=names)
    var["is_spike"] = np.repeat([False, False, True], [n_genes, n_mito, n_spikes])
    var["is_mito"] = np.repeat([False, True, False], [n_genes, n_mito, n_spikes])

    obs = pd.DataFrame(index=[f"cell_{i}" for i in range(n_cells)])
    X = sparse.csr_matrix(np.hstack([endo, mito, spike]).astype(np.float32))

    return anndata.AnnData(X=X, obs=obs, var=var)


@pytest.fixture
def counts_adata():
    """60 cells with ~10,000 endogenous counts each."""
    return make_counts_adata()


@pytest.fixture
def make_adata():
    """Factory for Poisson counts AnnData objects."""
    return make_counts_adata
