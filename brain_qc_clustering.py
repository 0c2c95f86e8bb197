#!/usr/bin/env python3
"""
Single-cell RNA-seq analysis of the Zeisel mouse brain dataset
Modular walkthrough from raw expression files to cluster markers

This script performs:
1. Loading, cell alignment and assembly of the mRNA, mito and spike-in files
2. Quality control and outlier cell removal
3. Size factor normalization with spike-ins
4. Mean-variance modelling and highly variable gene detection
5. Denoised PCA, t-SNE and SNN graph clustering
6. Marker gene detection and heatmap

uv run python brain_qc_clustering.py --data-dir data
"""

import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

# Import our custom modules
from brain_scrna.data_loader import load_brain_data, map_ensembl_ids
from brain_scrna.qc_utils import (
    calculate_qc_metrics,
    plot_qc_histograms,
    filter_outlier_cells,
    filter_low_abundance_genes,
    plot_highest_expressed,
)
from brain_scrna.normalization import (
    quick_cluster,
    compute_sum_factors,
    compute_spike_factors,
    normalize_counts,
)
from brain_scrna.variance import fit_variance_trend, decompose_variance, plot_mean_variance
from brain_scrna.processing import run_pca_tsne_clustering, plot_tsne
from brain_scrna.markers import (
    find_markers,
    select_marker_genes,
    report_markers,
    plot_marker_heatmap,
)
from brain_scrna.analysis_params import MARKER_PARAMS, get_param_summary

# Configure scanpy
sc.settings.verbosity = 1  # errors and warnings only
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def main(
    data_dir="data",
    plots_dir_path="plots",
    output_path=None,
    marker_cluster="1",
    map_ensembl=True,
):
    """Main analysis pipeline

    Args:
        data_dir: Directory holding the three expression files.
        plots_dir_path: Directory where plots will be saved.
        output_path: Optional .h5ad path for the final AnnData object.
        marker_cluster: Cluster whose markers are reported and plotted.
        map_ensembl: Whether to look up Ensembl ids for the gene symbols.
    """
    print("Starting single-cell analysis pipeline...")

    # Create output directory for plots
    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")
    print("Running in save-only mode - plots will not be displayed")

    # Print analysis settings
    print("\n" + get_param_summary() + "\n")

    # Step 1: Load, align and assemble the three sources
    adata = load_brain_data(data_dir)

    # Step 2: Gene identifiers
    if map_ensembl:
        adata = map_ensembl_ids(adata)

    # Step 3: QC metrics and outlier removal
    adata = calculate_qc_metrics(adata)
    plot_qc_histograms(adata, save_dir=plots_dir)
    adata, _ = filter_outlier_cells(adata)

    # Step 4: Drop genes with no counts left
    adata = filter_low_abundance_genes(adata)
    plot_highest_expressed(adata, save_dir=plots_dir)

    # Step 5: Size factors and log-normalization
    clusters = quick_cluster(adata)
    adata = compute_sum_factors(adata, clusters=clusters)
    adata = compute_spike_factors(adata)
    adata = normalize_counts(adata)

    # Step 6: Variance decomposition
    fit = fit_variance_trend(adata)
    var_out = decompose_variance(adata, fit)
    plot_mean_variance(adata, fit, save_dir=plots_dir)
    print("\nTop highly variable genes:")
    print(var_out.head(10).to_string())

    # Step 7: Denoised PCA, t-SNE, clustering
    adata = run_pca_tsne_clustering(adata, save_dir=plots_dir)
    plot_tsne(adata, save_dir=plots_dir)

    # Step 8: Markers
    markers = find_markers(adata, groupby="cluster")
    if marker_cluster not in markers:
        raise ValueError(
            f"Cluster '{marker_cluster}' not found; available clusters: "
            f"{', '.join(markers)}"
        )
    report_markers(markers, marker_cluster)
    chosen = select_marker_genes(markers[marker_cluster], top=MARKER_PARAMS["top"])
    plot_marker_heatmap(
        adata,
        chosen,
        groupby="cluster",
        save_dir=plots_dir,
        filename=f"marker_heatmap_cluster{marker_cluster}.png",
    )

    # Save results
    if output_path:
        adata.write(output_path)
        print(f"Saved analysed data to {output_path}")

    print("Analysis complete!")
    return adata, markers


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Mouse brain scRNA-seq QC, normalization, clustering and markers"
    )
    parser.add_argument(
        "--data-dir",
        default="data",
        help="Directory with the mRNA, mito and spike-in expression files (default: 'data')",
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Optional .h5ad file for the analysed AnnData object",
    )
    parser.add_argument(
        "--cluster",
        default="1",
        help="Cluster whose markers are reported (default: '1')",
    )
    parser.add_argument(
        "--skip-ensembl",
        action="store_true",
        help="Do not query MyGene.info for Ensembl ids",
    )
    args = parser.parse_args()

    adata, markers = main(
        data_dir=args.data_dir,
        plots_dir_path=args.plots_dir,
        output_path=args.output,
        marker_cluster=args.cluster,
        map_ensembl=not args.skip_ensembl,
    )
