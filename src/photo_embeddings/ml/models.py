"""Process-wide SigLIP loader and image-tower inference.

The checkpoint is loaded lazily on first use and shared by the background
scanner and interactive callers; a lock keeps two threads from loading it
twice. Changing the configured checkpoint or device replaces the cached pair.
"""

from __future__ import annotations

from threading import Lock

import numpy as np
import torch
from PIL import Image
from torch import device as TorchDevice
from transformers import AutoModel, AutoProcessor, PreTrainedModel

from photo_embeddings.config import EmbeddingModelConfig
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "siglip"})


def _mps_available() -> bool:
    return getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available()


def _select_device(config_device: str = "auto") -> TorchDevice:
    """Map the configured device onto one that exists on this machine.

    ``auto`` prefers CUDA, then MPS. An explicit ``cuda`` or ``mps`` that is
    unavailable degrades to CPU rather than failing the scan.
    """

    requested = (config_device or "auto").lower()

    if requested in {"auto", "cuda"} and torch.cuda.is_available():
        return torch.device("cuda")
    if requested in {"auto", "mps"} and _mps_available():
        return torch.device("mps")
    if requested not in {"auto", "cpu"}:
        LOGGER.warning("siglip_device_unavailable", extra={"requested": requested, "device": "cpu"})
    return torch.device("cpu")


_SIGLIP_LOCK = Lock()
_SIGLIP_PROCESSOR: AutoProcessor | None = None
_SIGLIP_MODEL: PreTrainedModel | None = None
_SIGLIP_DEVICE: TorchDevice | None = None
_SIGLIP_MODEL_NAME: str | None = None


def _load_siglip(config: EmbeddingModelConfig) -> tuple[AutoProcessor, PreTrainedModel, TorchDevice]:
    model_name = config.resolved_model_name()
    device = _select_device(config.device)

    global _SIGLIP_PROCESSOR, _SIGLIP_MODEL, _SIGLIP_DEVICE, _SIGLIP_MODEL_NAME
    with _SIGLIP_LOCK:
        if (
            _SIGLIP_PROCESSOR is not None
            and _SIGLIP_MODEL is not None
            and _SIGLIP_MODEL_NAME == model_name
            and _SIGLIP_DEVICE == device
        ):
            return _SIGLIP_PROCESSOR, _SIGLIP_MODEL, _SIGLIP_DEVICE

        LOGGER.info("siglip_load_start", extra={"model_name": model_name, "device": str(device)})
        processor = AutoProcessor.from_pretrained(model_name, use_fast=True)
        model = AutoModel.from_pretrained(model_name).to(device)
        model.eval()

        _SIGLIP_PROCESSOR = processor
        _SIGLIP_MODEL = model
        _SIGLIP_DEVICE = device
        _SIGLIP_MODEL_NAME = model_name
        LOGGER.info("siglip_load_complete", extra={"model_name": model_name, "device": str(device)})

        return processor, model, device


def get_siglip_embedding_model(config: EmbeddingModelConfig) -> tuple[AutoProcessor, PreTrainedModel, TorchDevice]:
    """Return the shared SigLIP processor, model, and device for ``config``."""

    return _load_siglip(config)


def clear_siglip_cache() -> None:
    """Drop the cached checkpoint so the next call reloads it."""

    global _SIGLIP_PROCESSOR, _SIGLIP_MODEL, _SIGLIP_DEVICE, _SIGLIP_MODEL_NAME
    with _SIGLIP_LOCK:
        _SIGLIP_PROCESSOR = None
        _SIGLIP_MODEL = None
        _SIGLIP_DEVICE = None
        _SIGLIP_MODEL_NAME = None


def siglip_image_features(config: EmbeddingModelConfig, image: Image.Image) -> np.ndarray:
    """Run the SigLIP image tower on one RGB image and return the raw feature row."""

    processor, model, device = get_siglip_embedding_model(config)
    inputs = processor(images=image, return_tensors="pt").to(device)

    with torch.no_grad():
        features = model.get_image_features(**inputs)

    return features[0].detach().cpu().numpy().astype(np.float32)


__all__ = ["clear_siglip_cache", "get_siglip_embedding_model", "siglip_image_features"]
