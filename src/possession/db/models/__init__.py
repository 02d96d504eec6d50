"""SQLAlchemy ORM models for the possession service.

- base: Common metadata, column types and enums
- possessions: Possession records and the code allocation counter
"""

from possession.db.models.base import AttachmentSlot, Base, PossessionStatus, metadata
from possession.db.models.possessions import Possession, PossessionCodeCounter

__all__ = [
    "AttachmentSlot",
    "Base",
    "Possession",
    "PossessionCodeCounter",
    "PossessionStatus",
    "metadata",
]
