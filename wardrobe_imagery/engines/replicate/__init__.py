"""
Replicate engine: text-to-image generation and background removal.
"""

from wardrobe_imagery.engines.replicate.base import (
    GenerationResult,
    IBackgroundRemover,
    IImageGenerator,
)
from wardrobe_imagery.engines.replicate.background_removal import ReplicateBackgroundRemovalClient
from wardrobe_imagery.engines.replicate.generation import ReplicateGenerationClient

__all__ = [
    "GenerationResult",
    "IBackgroundRemover",
    "IImageGenerator",
    "ReplicateBackgroundRemovalClient",
    "ReplicateGenerationClient",
]
