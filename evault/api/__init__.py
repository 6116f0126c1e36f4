"""Local HTTP API around the evidence vault.

Optional outer surface: the library works without it. Bind it to 127.0.0.1.
"""

from .server import create_app  # noqa: F401
