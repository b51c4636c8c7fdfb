"""
Hazard evaluation for KAI Alerts.
"""

from .rules import RiskRuleEngine
from .monitor import RegionMonitor

__all__ = [
    "RiskRuleEngine",
    "RegionMonitor",
]
