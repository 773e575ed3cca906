"""
Registry of the features that submit long-running work.

Maps each feature name to its FeatureSpec.
"""

from typing import Dict

from .backlink_analysis import FEATURE as BACKLINK_ANALYSIS
from .base import Endpoint, FeatureSpec
from .citation_analysis import FEATURE as CITATION_ANALYSIS
from .faq_generation import FEATURE as FAQ_GENERATION
from .keyword_research import FEATURE as KEYWORD_RESEARCH

FEATURES: Dict[str, FeatureSpec] = {
    feature.name: feature
    for feature in (KEYWORD_RESEARCH, CITATION_ANALYSIS, BACKLINK_ANALYSIS, FAQ_GENERATION)
}


__all__ = [
    "BACKLINK_ANALYSIS",
    "CITATION_ANALYSIS",
    "Endpoint",
    "FAQ_GENERATION",
    "FEATURES",
    "FeatureSpec",
    "KEYWORD_RESEARCH",
]
