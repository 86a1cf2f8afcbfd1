from .http import HttpSinkClient, classify_response

__all__ = ["HttpSinkClient", "classify_response"]
