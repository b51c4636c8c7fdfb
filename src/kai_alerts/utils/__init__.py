"""
Utility modules for KAI Alerts.
"""

from .logging import setup_logging, PerformanceLogger, AlertLogger

__all__ = ["setup_logging", "PerformanceLogger", "AlertLogger"]
