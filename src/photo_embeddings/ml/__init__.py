"""Model-related helpers for the embedding index.

:mod:`photo_embeddings.ml.models` imports torch and transformers; it is only
loaded by the SigLIP extractor backend.
"""

from .model_presets import HISTOGRAM_V1, SIGLIP_PRESETS

__all__ = ["HISTOGRAM_V1", "SIGLIP_PRESETS"]
