from .completion_client import CompletionClient

__all__ = ["CompletionClient"]
