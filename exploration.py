"""
Unsupervised exploration of normalized expression: PCA and t-SNE.

Both embeddings are for visualization only; nothing downstream consumes them.
"""

from dataclasses import dataclass
from typing import List
import logging
import pandas as pd
import numpy as np
from sklearn.decomposition import PCA
from sklearn.manifold import TSNE
from sklearn.preprocessing import StandardScaler

from schemas import InsufficientDataError

logger = logging.getLogger(__name__)

TSNE_PERPLEXITY = 3.0
TSNE_SEED = 42


@dataclass
class PCAResult:
    """Container for PCA results."""

    embedding: pd.DataFrame  # samples × PCs
    explained_variance: np.ndarray  # ratio per component
    loadings: pd.DataFrame  # genes × PCs
    genes_used: List[str]

    @property
    def pc1_percent(self) -> float:
        return float(self.explained_variance[0] * 100)

    @property
    def pc2_percent(self) -> float:
        return float(self.explained_variance[1] * 100) if len(self.explained_variance) > 1 else 0.0


@dataclass
class TSNEResult:
    """Container for t-SNE results."""

    embedding: pd.DataFrame  # samples × [tSNE1, tSNE2]
    perplexity: float
    random_state: int


def _scaled_samples(log_expression: pd.DataFrame) -> pd.DataFrame:
    """Transpose genes × samples to samples × genes, center and scale each gene."""
    if log_expression.shape[1] < 3:
        raise InsufficientDataError(
            f"Exploration needs at least 3 samples, got {log_expression.shape[1]}."
        )
    variable = log_expression.var(axis=1) > 0
    data = log_expression.loc[variable].T
    if data.shape[1] < 2:
        raise InsufficientDataError("Fewer than 2 genes vary across samples.")
    scaled = StandardScaler().fit_transform(data.values)
    return pd.DataFrame(scaled, index=data.index, columns=data.columns)


def run_pca(log_expression: pd.DataFrame, n_components: int = 10) -> PCAResult:
    """
    Principal component analysis of centered, unit-variance genes.

    Args:
        log_expression: genes × samples normalized log2 CPM
        n_components: Maximum number of components kept

    Returns:
        PCAResult (PC1/PC2 variance percentages via properties)
    """
    data = _scaled_samples(log_expression)
    n_components = min(n_components, min(data.shape))
    pca = PCA(n_components=n_components)
    embedding = pca.fit_transform(data.values)

    pc_names = [f"PC{i + 1}" for i in range(n_components)]
    result = PCAResult(
        embedding=pd.DataFrame(embedding, index=data.index, columns=pc_names),
        explained_variance=pca.explained_variance_ratio_,
        loadings=pd.DataFrame(pca.components_.T, index=data.columns, columns=pc_names),
        genes_used=data.columns.tolist(),
    )
    logger.info(
        f"PCA on {data.shape[1]} genes: PC1 {result.pc1_percent:.1f}%, "
        f"PC2 {result.pc2_percent:.1f}% variance explained"
    )
    return result


def run_tsne(
    log_expression: pd.DataFrame,
    perplexity: float = TSNE_PERPLEXITY,
    random_state: int = TSNE_SEED,
) -> TSNEResult:
    """
    Two-dimensional t-SNE embedding with a fixed seed.

    Perplexity must stay below the number of samples; larger values are
    clamped and the effective value is recorded in the result.
    """
    data = _scaled_samples(log_expression)
    n_samples = data.shape[0]
    effective = min(float(perplexity), (n_samples - 1) / 3.0)
    if effective != perplexity:
        logger.warning(
            f"t-SNE perplexity {perplexity} too large for {n_samples} samples; using {effective:.2f}"
        )

    tsne = TSNE(
        n_components=2,
        perplexity=effective,
        random_state=random_state,
        init="pca",
        learning_rate="auto",
    )
    embedding = tsne.fit_transform(data.values)
    logger.info(f"t-SNE embedding of {n_samples} samples (perplexity {effective:.2f}, seed {random_state})")
    return TSNEResult(
        embedding=pd.DataFrame(embedding, index=data.index, columns=["tSNE1", "tSNE2"]),
        perplexity=effective,
        random_state=random_state,
    )
