from .base import Base
from .estimate import Estimate
from .profile import Profile
from .subscription import PRO_STATUSES, Subscription

__all__ = [
    "Base",
    "Estimate",
    "Profile",
    "Subscription",
    "PRO_STATUSES",
]
