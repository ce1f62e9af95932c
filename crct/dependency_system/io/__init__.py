"""Tracker file persistence."""
