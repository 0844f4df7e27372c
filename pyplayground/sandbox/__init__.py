"""
Isolated execution contexts and the message bridge back to the host.
"""

from .channel import MessageChannel, Subscription
from .context import IsolatedContext
from .guest import GuestOptions, Instrumentation, describe_error, execute_source, guest_main
from .messages import Message, MessageKind

__all__ = [
    "GuestOptions",
    "Instrumentation",
    "IsolatedContext",
    "Message",
    "MessageChannel",
    "MessageKind",
    "Subscription",
    "describe_error",
    "execute_source",
    "guest_main",
]
