"""JSON-file persistence for executions, workflows and conversations."""
