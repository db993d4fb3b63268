"""Utility modules for longrun."""
