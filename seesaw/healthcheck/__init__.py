"""Backend and service healthchecks: checkers, scheduling and protocol helpers."""

__all__ = ["core", "dial", "check", "tcp", "udp", "http", "dns", "ping", "radius"]