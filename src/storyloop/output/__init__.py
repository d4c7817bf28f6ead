"""Presentation collaborators for workflow output."""
