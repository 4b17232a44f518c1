"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from scribe.dao.base import BaseDAO
from scribe.dao.subscription import SubscriptionDAO

__all__ = ["BaseDAO", "SubscriptionDAO"]
