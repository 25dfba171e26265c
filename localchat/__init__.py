"""Building blocks for serverless local-network chat: protocol, identity, mDNS discovery, chat state and Tk widgets."""

__version__ = "0.1.0"