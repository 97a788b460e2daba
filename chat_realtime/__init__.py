"""
Realtime channel fan-out and presence server for bitchat.
"""

__version__ = "1.0.0"
