"""Distributed performance monitoring: node monitor, reporting node, record chain and metrics view."""

__version__ = "0.1.0"