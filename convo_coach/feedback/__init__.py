"""Parsing of the structured feedback block embedded in model replies."""

from .extractor import ExtractionResult, extract_feedback

__all__ = [
    "ExtractionResult",
    "extract_feedback",
]
