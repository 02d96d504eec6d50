"""Possession service layer.

- PossessionStore: persistence adapter over an AsyncSession
- CodeAllocator: concurrency-safe possession code allocation
- transitions: the status transition table
- PossessionLifecycleService: creation, transitions, handover gate, certificates
- PossessionReportingService: timelines, statistics, proximity, overdue, reports
- Collaborators: plot, file and staff lookups over HTTP
- DocumentStore: S3-compatible storage for attachments
"""

from possession.services.code_allocator import CodeAllocator
from possession.services.collaborators import (
    CollaboratorError,
    Collaborators,
    FilePaymentStatus,
    PlotReadiness,
)
from possession.services.errors import (
    CodeAllocationExhaustedError,
    ConflictingConcurrentUpdateError,
    DuplicateActivePossessionError,
    IllegalTransitionError,
    PossessionError,
    PossessionNotFoundError,
    ValidationFailedError,
)
from possession.services.lifecycle import (
    NewPossession,
    PossessionLifecycleService,
    TransitionPayload,
)
from possession.services.reporting import PossessionReportingService
from possession.services.storage import DocumentStore, StorageError
from possession.services.store import PossessionFilters, PossessionStore

__all__ = [
    "CodeAllocationExhaustedError",
    "CodeAllocator",
    "CollaboratorError",
    "Collaborators",
    "ConflictingConcurrentUpdateError",
    "DocumentStore",
    "DuplicateActivePossessionError",
    "FilePaymentStatus",
    "IllegalTransitionError",
    "NewPossession",
    "PlotReadiness",
    "PossessionError",
    "PossessionFilters",
    "PossessionLifecycleService",
    "PossessionNotFoundError",
    "PossessionReportingService",
    "PossessionStore",
    "StorageError",
    "TransitionPayload",
    "ValidationFailedError",
]
