"""
Leased message channels, the envelopes they carry, and transports.
"""

from .channel import MessageChannel, QueueMessageLease, TableMessageChannel
from .envelope import PoisonEnvelope
from .transport import ChannelTransport, EndpointTransport, MessageTransport

__all__ = [
    "MessageChannel",
    "QueueMessageLease",
    "TableMessageChannel",
    "PoisonEnvelope",
    "MessageTransport",
    "ChannelTransport",
    "EndpointTransport",
]
