#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles parsing, cell alignment and assembly of the Zeisel brain expression files
"""

from dataclasses import dataclass
from pathlib import Path

import anndata
import httpx
import mygene
import numpy as np
import pandas as pd
from scipy import sparse

from brain_scrna.analysis_params import INPUT_FILES, N_METADATA_ROWS

# Split-gene suffix used by this dataset only (e.g. "Gm12345_loc3")
LOC_SUFFIX_PATTERN = r"_loc[0-9]+$"


class AlignmentError(ValueError):
    """Raised when the cell order of one source does not match the endogenous source"""

    def __init__(self, source, mismatches, message=None):
        self.source = source
        self.mismatches = list(mismatches)
        if message is None:
            shown = ", ".join(str(i) for i in self.mismatches[:10])
            more = "..." if len(self.mismatches) > 10 else ""
            message = (
                f"cell ids of the {source} source do not match the endogenous "
                f"source at {len(self.mismatches)} position(s): {shown}{more}"
            )
        super().__init__(message)


@dataclass
class ParsedSource:
    """Per-cell metadata (one row per cell) and a genes x cells count table"""

    metadata: pd.DataFrame
    counts: pd.DataFrame

    @property
    def cell_ids(self):
        return self.metadata.index


def read_expression_file(file_path, n_meta_rows=N_METADATA_ROWS):
    """Read one of the tab-delimited expression files

    The first ``n_meta_rows`` rows hold per-cell attributes (attribute name in
    the second column), followed by one header row and then the counts, where
    the first column is the gene name and the second a filler column.

    Args:
        file_path: Path to the text file
        n_meta_rows: Number of metadata rows at the top of the file

    Returns:
        ParsedSource with metadata indexed by cell id
    """
    print(f"Loading {file_path}")

    meta = pd.read_csv(file_path, sep="\t", header=None, nrows=n_meta_rows, dtype=str)
    meta = meta.iloc[:, 1:].set_index(1)
    metadata = meta.T
    metadata.columns.name = None
    metadata.index = pd.Index(metadata["cell_id"].astype(str).values)

    counts = pd.read_csv(
        file_path, sep="\t", header=None, skiprows=n_meta_rows + 1, index_col=0
    )
    counts = counts.iloc[:, 1:]

    if counts.shape[1] != metadata.shape[0]:
        raise ValueError(
            f"{file_path}: {counts.shape[1]} count columns but "
            f"{metadata.shape[0]} cells in the metadata block"
        )

    counts.columns = metadata.index
    counts.index = pd.Index(counts.index.astype(str), name=None)
    counts = counts.astype(np.int64)

    return ParsedSource(metadata=metadata, counts=counts)


def _mismatched_positions(reference, other):
    """Positions where two id sequences disagree, including any length excess"""
    n = min(len(reference), len(other))
    ref = np.asarray(reference[:n], dtype=object)
    oth = np.asarray(other[:n], dtype=object)
    positions = list(np.flatnonzero(ref != oth))
    positions.extend(range(n, max(len(reference), len(other))))
    return positions


def align_sources(endo, mito, spike):
    """Reorder the mitochondrial source to the endogenous cell order

    The spike-in source must already be in endogenous order; after the
    reordering the mitochondrial source must be too.

    Args:
        endo: Endogenous ParsedSource (defines the cell order)
        mito: Mitochondrial ParsedSource
        spike: Spike-in ParsedSource

    Returns:
        Tuple of (endo, mito, spike) sharing one cell order

    Raises:
        AlignmentError: if any source cannot be put in the endogenous order
    """
    print("Aligning cells across sources...")

    order = mito.cell_ids.get_indexer(endo.cell_ids)
    missing = np.flatnonzero(order < 0)
    if len(missing):
        raise AlignmentError(
            "mito",
            missing,
            f"{len(missing)} endogenous cell(s) missing from the mito source, "
            f"first: {endo.cell_ids[missing[0]]}",
        )

    mito = ParsedSource(
        metadata=mito.metadata.iloc[order],
        counts=mito.counts.iloc[:, order],
    )

    for name, source in (("spike", spike), ("mito", mito)):
        mismatches = _mismatched_positions(endo.cell_ids, source.cell_ids)
        if mismatches:
            raise AlignmentError(name, mismatches)

    print(f"  {len(endo.cell_ids)} cells aligned across all three sources")

    return endo, mito, spike


def collapse_split_genes(counts, pattern=LOC_SUFFIX_PATTERN):
    """Sum rows that differ only by a location suffix

    Args:
        counts: genes x cells DataFrame
        pattern: Regex of the suffix to strip from row labels

    Returns:
        DataFrame with one row per base gene name, in order of first appearance
    """
    base_names = counts.index.str.replace(pattern, "", regex=True)
    collapsed = counts.groupby(base_names, sort=False).sum()
    collapsed.index.name = counts.index.name

    n_merged = counts.shape[0] - collapsed.shape[0]
    if n_merged:
        print(f"  Collapsed {n_merged} split rows into {collapsed.shape[0]} genes")

    return collapsed


def assemble_dataset(endo, mito, spike):
    """Stack the aligned sources into one AnnData object

    Rows are stacked as endogenous, mitochondrial, spike-in. The matrix is
    stored cells x genes, as AnnData expects.

    Args:
        endo: Endogenous ParsedSource, already collapsed
        mito: Mitochondrial ParsedSource, aligned
        spike: Spike-in ParsedSource

    Returns:
        AnnData object with ``is_spike`` and ``is_mito`` gene flags
    """
    print("Assembling dataset...")

    blocks = [endo.counts, mito.counts, spike.counts]
    for block in blocks[1:]:
        if not block.columns.equals(endo.counts.columns):
            raise AlignmentError(
                "assembly", _mismatched_positions(endo.counts.columns, block.columns)
            )

    all_counts = pd.concat(blocks, axis=0)
    n_rows = [block.shape[0] for block in blocks]

    var = pd.DataFrame(index=pd.Index(all_counts.index.astype(str), name=None))
    var["is_spike"] = np.repeat([False, False, True], n_rows)
    var["is_mito"] = np.repeat([False, True, False], n_rows)

    obs = endo.metadata.copy()
    obs.index = pd.Index(obs.index.astype(str), name=None)

    X = sparse.csr_matrix(all_counts.to_numpy(dtype=np.float32).T)
    adata = anndata.AnnData(X=X, obs=obs, var=var)
    adata.var_names_make_unique()

    print(
        f"  {adata.n_obs} cells, {adata.n_vars} features "
        f"({n_rows[0]} endogenous, {n_rows[1]} mito, {n_rows[2]} spike-in)"
    )

    return adata


def _first_ensembl_id(hit):
    ensembl = hit.get("ensembl")
    if isinstance(ensembl, list):
        ensembl = ensembl[0] if ensembl else None
    if isinstance(ensembl, dict):
        return ensembl.get("gene")
    return None


def query_ensembl_ids(symbols, species="mouse", chunk_size=1000):
    """Look up Ensembl gene ids for gene symbols through MyGene.info

    Args:
        symbols: Iterable of gene symbols
        species: Species name understood by MyGene.info
        chunk_size: Number of symbols per request

    Returns:
        Dict of symbol -> first Ensembl gene id, for resolved symbols only
    """
    mg = mygene.MyGeneInfo()
    symbols = list(symbols)
    lookup = {}

    for i in range(0, len(symbols), chunk_size):
        chunk = symbols[i : i + chunk_size]
        hits = mg.querymany(
            chunk,
            scopes="symbol",
            fields="ensembl.gene",
            species=species,
            returnall=False,
            verbose=False,
        )
        for hit in hits:
            if hit.get("notfound") or hit["query"] in lookup:
                continue
            gene_id = _first_ensembl_id(hit)
            if gene_id:
                lookup[hit["query"]] = gene_id

    return lookup


def map_ensembl_ids(adata, lookup=None, species="mouse"):
    """Add an Ensembl id column to adata.var

    Args:
        adata: AnnData object with gene symbols as var_names
        lookup: Optional dict of symbol -> Ensembl id. If None, MyGene.info is queried.
        species: Species used for the MyGene.info query

    Returns:
        AnnData object with ``ensembl`` in var (missing where unresolved)
    """
    print("Mapping gene symbols to Ensembl ids...")

    if lookup is None:
        try:
            lookup = query_ensembl_ids(adata.var_names, species=species)
        except (httpx.HTTPError, OSError) as err:
            print(f"  Warning: Ensembl lookup failed ({err}), ids left missing")
            lookup = {}

    ids = [lookup.get(symbol) for symbol in adata.var_names]
    adata.var["ensembl"] = pd.Categorical(ids)

    n_resolved = sum(gene_id is not None for gene_id in ids)
    print(f"  Resolved {n_resolved}/{adata.n_vars} symbols")

    return adata


def load_brain_data(data_dir, file_names=INPUT_FILES, n_meta_rows=N_METADATA_ROWS):
    """Load, align, collapse and assemble the three expression files

    Args:
        data_dir: Directory holding the expression files
        file_names: Dict with ``endogenous``, ``mito`` and ``spike`` file names
        n_meta_rows: Number of metadata rows at the top of each file

    Returns:
        Assembled AnnData object
    """
    print("Loading expression data...")

    data_dir = Path(data_dir)
    endo = read_expression_file(data_dir / file_names["endogenous"], n_meta_rows)
    mito = read_expression_file(data_dir / file_names["mito"], n_meta_rows)
    spike = read_expression_file(data_dir / file_names["spike"], n_meta_rows)

    endo, mito, spike = align_sources(endo, mito, spike)
    endo = ParsedSource(metadata=endo.metadata, counts=collapse_split_genes(endo.counts))

    return assemble_dataset(endo, mito, spike)
