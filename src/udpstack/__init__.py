"""udpstack: relay tunnelled UDP flows over real sockets."""

__version__ = "0.1.0"
