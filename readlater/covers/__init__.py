"""
Cover images for saved items.
"""

from .generator import ImageGenerator, OpenAIImageGenerator
from .prompts import build_cover_prompt, build_fallback_cover_prompt, build_snippet
from .service import CoverService, ExternalCoverFetcher

__all__ = [
    "ImageGenerator",
    "OpenAIImageGenerator",
    "CoverService",
    "ExternalCoverFetcher",
    "build_snippet",
    "build_cover_prompt",
    "build_fallback_cover_prompt",
]
