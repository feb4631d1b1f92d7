"""Ferret triggers — decides when a session event is worth researching.

Public surface
--------------
``TriggerDetector``  — prompt and tool-output analysis with per-session dedup
``clean_query``      — query normalisation shared with the service layer
"""

from .detector import TriggerDetector, clean_query, extract_topics

__all__ = ["TriggerDetector", "clean_query", "extract_topics"]
