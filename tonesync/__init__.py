"""Estimate and compensate the drifting offset between two live audio streams."""
