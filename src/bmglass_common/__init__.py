"""Shared building blocks for BMaGlass Pay backend services."""
