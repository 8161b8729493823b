"""
Tracetap

Local observability layer for applications that call LLM APIs.
"""

__version__ = "0.3.0"
