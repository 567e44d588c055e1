"""Catalog persistence, rebuild and lookup."""
