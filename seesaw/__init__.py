"""Load balancer healthchecks and an IPVS service model."""

__version__ = "0.1.0"