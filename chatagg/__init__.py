"""
chatagg - multi-channel chat aggregation gateway.
"""

__version__ = "0.1.0"
__logo__ = "🧺"
