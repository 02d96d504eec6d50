"""Pydantic schemas for the possession API.

Request and response models for the possessions namespace.
"""

from possession.api.schemas.possessions import (
    BulkTransitionRequest,
    CollectorUpdateRequest,
    CreatePossessionRequest,
    PossessionListResponse,
    PossessionResponse,
    SurveyUpdateRequest,
    TransitionRequest,
    UpdatePossessionRequest,
)

__all__ = [
    "BulkTransitionRequest",
    "CollectorUpdateRequest",
    "CreatePossessionRequest",
    "PossessionListResponse",
    "PossessionResponse",
    "SurveyUpdateRequest",
    "TransitionRequest",
    "UpdatePossessionRequest",
]
