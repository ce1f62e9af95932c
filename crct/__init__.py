"""CRCT tooling."""
