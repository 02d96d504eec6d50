"""Possession lifecycle engine.

Tracks the physical handover of allotted plots from the issuing organization
to the buyer: request, site survey, readiness, handover and collection of the
possession letter.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
