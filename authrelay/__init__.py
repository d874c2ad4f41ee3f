"""AuthRelay: local forwarding proxy to one authenticated upstream."""

__version__ = "0.1.0"
