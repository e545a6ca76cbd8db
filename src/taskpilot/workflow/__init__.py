"""Workflow-to-plan conversion."""
