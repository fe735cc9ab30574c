# docshelf embeddings module
# Text -> vector function backed by sentence transformers

import logging
from typing import List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


class EmbeddingManager:
    """Generates document embeddings for semantic search"""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
                 dimensions: Optional[int] = None):
        """
        Initialize embedding manager

        Args:
            model_name: Sentence transformer model name
            dimensions: Expected embedding size; checked against the model on load
        """
        self.model_name = model_name
        self.expected_dimensions = dimensions
        self.model = None

    def _load_model(self):
        """Load the sentence transformer model"""
        try:
            logger.info(f"Loading embedding model: {self.model_name}")
            self.model = SentenceTransformer(self.model_name)
        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise

        actual = self.model.get_sentence_embedding_dimension()
        if self.expected_dimensions and actual != self.expected_dimensions:
            raise ValueError(
                f"Model {self.model_name} produces {actual}-dimensional embeddings, "
                f"expected {self.expected_dimensions}"
            )
        logger.info(f"Model loaded successfully. Embedding dimension: {actual}")

    @property
    def dimensions(self) -> int:
        if self.model is None:
            self._load_model()
        return self.model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> List[float]:
        """Generate embedding for a single text"""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts in one model call"""
        if not texts:
            return []
        if self.model is None:
            self._load_model()

        cleaned_texts = [text.strip() if text else "" for text in texts]
        embeddings = self.model.encode(cleaned_texts, convert_to_numpy=True, show_progress_bar=False)
        return [emb.astype(np.float32).tolist() for emb in embeddings]


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Calculate cosine similarity between two vectors"""
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


def cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of one query vector against every row of a matrix"""
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide='ignore', invalid='ignore'):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return scores
