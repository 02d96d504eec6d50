"""API middleware components.

- Request ID tracking for log correlation
- Consistent error response formatting
"""

from possession.api.middleware.errors import ErrorHandlerMiddleware
from possession.api.middleware.request_id import RequestIDMiddleware

__all__ = [
    "ErrorHandlerMiddleware",
    "RequestIDMiddleware",
]
