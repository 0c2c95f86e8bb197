#!/usr/bin/env python3
"""
Analysis parameters for the mouse brain single-cell RNA-seq walkthrough

This file centralizes all thresholds and seeds used in the pipeline.
Modify these values to adjust filtering stringency or reproducibility.
"""

# Input files (Zeisel et al. 2015, cortex and hippocampus)
INPUT_FILES = {
    "endogenous": "expression_mRNA_17-Aug-2014.txt",
    "mito": "expression_mito_17-Aug-2014.txt",
    "spike": "expression_spikes_17-Aug-2014.txt",
}

# Number of metadata rows at the top of each expression file
N_METADATA_ROWS = 10

# Cell-level outlier filters
QC_PARAMS = {
    "nmads": 3,  # MADs from the median before a cell is an outlier
    "min_average_count": 0,  # Genes must have an average count above this
}

# Size factor estimation
NORM_PARAMS = {
    "min_mean": 0.1,  # Average count threshold for genes used in pooling
    "min_cluster_size": 100,  # Smallest cluster allowed by quick_cluster
    "pool_sizes": list(range(21, 102, 5)),  # Pool sizes for deconvolution
}

# Mean-variance trend
VARIANCE_PARAMS = {
    "parametric": True,
    "span": 0.4,  # LOWESS span
    "min_mean": 0.1,  # Minimum mean log-expression of trend points
    "min_spikes": 5,  # Fall back to endogenous genes below this
}

# Dimensionality reduction and clustering
CLUSTER_PARAMS = {
    "approximate": True,  # ARPACK instead of a full SVD
    "min_rank": 5,
    "max_rank": 100,
    "n_neighbors": 10,  # k for the shared nearest-neighbor graph
    "walktrap_steps": 4,
    "tsne_perplexity": 50,
}

# Marker detection and heatmap
MARKER_PARAMS = {
    "direction": "up",
    "top": 10,  # Genes with Top <= this are plotted
    "zlim": 5,  # Heatmap values are clipped to [-zlim, zlim]
}

# Seeds are handed to each stage explicitly
RANDOM_SEEDS = {
    "quick_cluster": 100,
    "pca": 1000,
    "tsne": 1000,
}


# Parameter summary message
def get_param_summary():
    """Return a formatted summary of current analysis settings"""
    summary = [
        "=== Analysis Settings ===",
        "\nQuality control:",
        f"  - Outlier threshold: {QC_PARAMS['nmads']} MADs",
        f"  - Min average count per gene: > {QC_PARAMS['min_average_count']}",
        "\nNormalization:",
        f"  - Min mean for pooling: {NORM_PARAMS['min_mean']}",
        f"  - Pool sizes: {NORM_PARAMS['pool_sizes'][0]}-{NORM_PARAMS['pool_sizes'][-1]}",
        "\nVariance trend:",
        f"  - Parametric: {VARIANCE_PARAMS['parametric']}, span: {VARIANCE_PARAMS['span']}",
        "\nClustering:",
        f"  - PCs: {CLUSTER_PARAMS['min_rank']}-{CLUSTER_PARAMS['max_rank']}",
        f"  - SNN neighbors: {CLUSTER_PARAMS['n_neighbors']}",
        f"  - t-SNE perplexity: {CLUSTER_PARAMS['tsne_perplexity']}",
        "\nMarkers:",
        f"  - Top rank cutoff: {MARKER_PARAMS['top']}",
    ]

    return "\n".join(summary)


# Validation function
def validate_params():
    """Validate that analysis parameters make sense"""
    errors = []

    if QC_PARAMS["nmads"] <= 0:
        errors.append("nmads must be positive")

    if NORM_PARAMS["min_mean"] < 0:
        errors.append("min_mean must not be negative")

    if not NORM_PARAMS["pool_sizes"] or min(NORM_PARAMS["pool_sizes"]) < 2:
        errors.append("pool_sizes must contain sizes of at least 2")

    if not 0 < VARIANCE_PARAMS["span"] <= 1:
        errors.append("span must be between 0 and 1")

    if CLUSTER_PARAMS["min_rank"] > CLUSTER_PARAMS["max_rank"]:
        errors.append("min_rank must not exceed max_rank")

    if CLUSTER_PARAMS["n_neighbors"] < 1:
        errors.append("n_neighbors must be at least 1")

    if MARKER_PARAMS["direction"] not in ("up", "down", "any"):
        errors.append("direction must be 'up', 'down' or 'any'")

    if MARKER_PARAMS["zlim"] <= 0:
        errors.append("zlim must be positive")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_params()
