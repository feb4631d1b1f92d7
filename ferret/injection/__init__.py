"""Ferret injection — turns ranked knowledge into budgeted context blocks.

Public surface
--------------
``InjectionManager``  — gates, type selection and atomic recording per session
``formatters``        — memory / research / combined / warning / task templates
"""

from . import formatters
from .manager import InjectionManager, score_task

__all__ = ["InjectionManager", "formatters", "score_task"]
