from .base import Base
from .error_code import ErrorCode
from .event import Event
from .help_session import HelpSession
from .message import Message
from .stripe_subscription import StripeSubscription
from .tech_usage import TechUsage
from .user import User

__all__ = [
    "Base",
    "ErrorCode",
    "Event",
    "HelpSession",
    "Message",
    "StripeSubscription",
    "TechUsage",
    "User",
]
