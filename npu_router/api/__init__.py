"""
npu-router :: HTTP API

INL - 2025
"""

from npu_router.api.server import RouterServer

__all__ = ["RouterServer"]
