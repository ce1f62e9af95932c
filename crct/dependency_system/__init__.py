"""Dependency tracking system: hierarchical keys, dependency grids and tracker files."""
