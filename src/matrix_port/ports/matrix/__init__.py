"""
Matrix port: the target side of the bridge.

- client: client-server API calls (rooms, state, media, registration, profile)
- listener: /sync long-poll as the bridge identity
"""

from .client import MatrixClient, MatrixError
from .listener import MatrixListener

__all__ = ["MatrixClient", "MatrixError", "MatrixListener"]
