"""Declarative-apply substrate boundary."""

from .base import Substrate
from .kubectl import KubectlSubstrate, classify_failure

__all__ = ["Substrate", "KubectlSubstrate", "classify_failure"]
