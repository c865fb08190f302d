"""
instctl - database instance lifecycle manager.

This package implements the instance upgrade orchestrator: version
resolution, compatibility classification, in-place and dump/restore
upgrades of local instances with crash-consistent backup and revert, and
upgrades of cloud-hosted instances.
"""

__version__ = "0.1.0"
