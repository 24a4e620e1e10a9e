"""
Matching Rules Module
"""

from .duplicate_detector import DuplicateDetector, DuplicateMatch, duplicate_detector

__all__ = ["DuplicateDetector", "DuplicateMatch", "duplicate_detector"]
