"""Workflow definitions, node catalog and graph executor."""
