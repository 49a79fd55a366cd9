"""
SDK for Kakeru Coach.

Remote AI capabilities and the token accounting that meters them.
"""

from .accounting import TokenAccountant
from .openai_client import CoachClient, RemoteResponseError

__all__ = ["CoachClient", "RemoteResponseError", "TokenAccountant"]
