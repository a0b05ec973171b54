"""Forward proxy egressing from a random IPv6 in a CIDR block, or from fixed IPv4 addresses."""

__version__ = "0.1.0"
