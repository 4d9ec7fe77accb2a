"""
Sandwich Bot
Trend-driven front-run/back-run submission pipeline for Solana
"""

__version__ = "0.1.0"
