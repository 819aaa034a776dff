"""
Streaming completion pipeline for an in-editor assistant.
"""

__version__ = "0.1.0"
