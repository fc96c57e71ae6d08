"""Cloaker - Traffic Cloaking Decision Engine"""

__version__ = "1.0.0"
