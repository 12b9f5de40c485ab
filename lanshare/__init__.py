"""LAN file sharing over the LocalSend v2 protocol."""

__version__ = "1.0.0"
