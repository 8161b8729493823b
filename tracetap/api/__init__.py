"""
Tracetap HTTP API routers.
"""
