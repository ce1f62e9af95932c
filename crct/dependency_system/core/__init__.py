"""Key management and dependency grid primitives."""
