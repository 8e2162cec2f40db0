"""Suitability flag persistence and acknowledgment workflow."""
