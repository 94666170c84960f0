"""Message channel transports."""
from .base import ChannelConsumer, Transport
from .datagram import DatagramTransport
from .loopback import LoopbackTransport

_TRANSPORTS = {
    DatagramTransport.name: DatagramTransport,
    LoopbackTransport.name: LoopbackTransport,
}


def create_transport(kind: str, **kwargs) -> Transport:
    """Build the transport named by ``kind`` ('datagram' or 'loopback')."""
    try:
        transport_class = _TRANSPORTS[kind.lower()]
    except KeyError:
        raise ValueError(f"Unknown transport: {kind}") from None
    return transport_class(**kwargs)


__all__ = [
    "ChannelConsumer",
    "DatagramTransport",
    "LoopbackTransport",
    "Transport",
    "create_transport",
]
