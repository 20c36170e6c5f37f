"""Bake configuration."""
