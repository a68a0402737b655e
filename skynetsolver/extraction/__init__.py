from .background import estimate_background, BackgroundResult
from .extractor import extract_stars, filter_stars, ExtractionOptions, ExtractionResult

__all__ = [
    "estimate_background",
    "BackgroundResult",
    "extract_stars",
    "filter_stars",
    "ExtractionOptions",
    "ExtractionResult",
]
