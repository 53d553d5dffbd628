"""Deploys TLS certificate pairs to network appliances."""

__version__ = "0.1.0"
