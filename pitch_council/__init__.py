"""Pitch Council: multi-agent refinement of startup ideas under a spending cap."""

__version__ = "0.1.0"
