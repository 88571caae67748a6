"""Adaptive learning path backend."""
