"""ORM models. Importing this package registers every table with Base.metadata."""

from shutterbook.models.notification import Notification, NotificationType
from shutterbook.models.user import User, UserRole

__all__ = ["Notification", "NotificationType", "User", "UserRole"]
