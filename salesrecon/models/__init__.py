"""Database models — re-exports all models.

Import from here:  from salesrecon.models import Activity, Deal, ...
"""

from .base import Base  # noqa: F401

from .auth import User  # noqa: F401

from .records import Activity, Deal, DealStageChange  # noqa: F401

from .audit import ACTION_TYPES, ReconciliationAction  # noqa: F401
