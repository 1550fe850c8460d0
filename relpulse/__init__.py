"""
RelPulse - Relationship journal analysis

Analyzes journal entries with a remote language model, degrades to a local
keyword analyzer when the provider is unhealthy, and maintains a health score
per relationship.
"""

__version__ = "1.0.0"
__author__ = "RelPulse Team"

from . import config
from . import pattern_analyzer
from . import fallback
from . import health_score

__all__ = [
    "config",
    "pattern_analyzer",
    "fallback",
    "health_score",
]
