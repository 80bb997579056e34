"""Provisioning agent for immutable A/B partitioned appliance images."""

from kairos_agent.__version__ import __version__

__all__ = ["__version__"]
