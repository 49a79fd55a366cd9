"""
Kakeru Coach.

Session orchestration for AI-assisted writing practice under a monthly
token budget.
"""

__version__ = "0.1.0"
