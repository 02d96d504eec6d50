"""API routers.

- possessions: possession lifecycle, handover and reporting endpoints
"""

from possession.api.routers.possessions import router as possessions_router

__all__ = [
    "possessions_router",
]
