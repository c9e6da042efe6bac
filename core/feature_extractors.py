import hashlib
import logging
from pathlib import Path
from typing import Dict, Mapping

import numpy as np

from core.exceptions import ExtractionError, ModelUnavailableError

logger = logging.getLogger(__name__)


class FeatureExtractor:
    """
    Contract for turning a photo locator into a fixed-length vector

    initialize() raises ModelUnavailableError; embed() raises ExtractionError.
    feature_type names the vector space; cached vectors are only reused
    for the same feature_type.
    """

    @property
    def feature_type(self) -> str:
        return type(self).__name__

    def initialize(self):
        """Load whatever the extractor needs. Safe to call more than once."""
        pass

    def embed(self, locator: str) -> np.ndarray:
        raise NotImplementedError


class PrecomputedFeatureExtractor(FeatureExtractor):
    """
    Serves vectors computed ahead of time, keyed by locator
    """

    def __init__(self, vectors: Mapping[str, np.ndarray]):
        self.vectors: Dict[str, np.ndarray] = {
            str(locator): np.asarray(vector, dtype=np.float32).ravel()
            for locator, vector in vectors.items()
        }

        digest = hashlib.md5()
        for locator in sorted(self.vectors):
            digest.update(locator.encode('utf-8'))
            digest.update(self.vectors[locator].tobytes())
        self._feature_type = f"precomputed:{digest.hexdigest()}"

    @property
    def feature_type(self) -> str:
        return self._feature_type

    @classmethod
    def from_npz(cls, path: str) -> 'PrecomputedFeatureExtractor':
        """Load vectors from an .npz archive whose keys are locators"""
        if not Path(path).exists():
            raise ModelUnavailableError(f"Embedding file not found: {path}")

        with np.load(path) as archive:
            vectors = {key: archive[key] for key in archive.files}

        logger.info("Loaded %d precomputed embeddings from %s", len(vectors), path)
        return cls(vectors)

    def embed(self, locator: str) -> np.ndarray:
        try:
            return self.vectors[str(locator)]
        except KeyError:
            raise ExtractionError(f"No precomputed embedding for {locator}") from None


class CLIPFeatureExtractor(FeatureExtractor):
    """
    CLIP-based feature extraction - robust to blur, crops and re-encoding
    """

    def __init__(self,
                 model_name: str = "openai/clip-vit-base-patch32",
                 use_gpu: bool = True):
        self.model_name = model_name
        self.use_gpu = use_gpu
        self.device = 'cpu'
        self.model = None
        self.processor = None

    @property
    def feature_type(self) -> str:
        return f"clip:{self.model_name}"

    def initialize(self):
        """Load the CLIP model and processor"""
        if self.model is not None:
            return

        try:
            import torch
            from transformers import CLIPModel, CLIPProcessor
        except ImportError as e:
            raise ModelUnavailableError(
                "CLIP extraction needs the 'clip' extra (torch, transformers)"
            ) from e

        self.device = 'cuda' if self.use_gpu and torch.cuda.is_available() else 'cpu'

        try:
            self.model = CLIPModel.from_pretrained(self.model_name)
            self.processor = CLIPProcessor.from_pretrained(self.model_name)
        except OSError as e:
            raise ModelUnavailableError(f"Cannot load {self.model_name}: {e}") from e

        self.model.to(self.device)
        self.model.eval()
        logger.info("Loaded %s on %s", self.model_name, self.device)

    def embed(self, locator: str) -> np.ndarray:
        """Extract a normalized CLIP image embedding"""
        if self.model is None:
            raise ExtractionError("CLIPFeatureExtractor.initialize() was not called")

        import torch
        from PIL import Image, UnidentifiedImageError

        try:
            with Image.open(locator) as img:
                image_rgb = img.convert('RGB')
        except (OSError, UnidentifiedImageError) as e:
            raise ExtractionError(f"Cannot load image {locator}: {e}") from e

        inputs = self.processor(images=image_rgb, return_tensors="pt")
        inputs = {k: v.to(self.device) for k, v in inputs.items()}

        with torch.no_grad():
            image_features = self.model.get_image_features(**inputs)

        image_features = image_features / image_features.norm(dim=-1, keepdim=True)

        return image_features.cpu().numpy().flatten().astype(np.float32)
