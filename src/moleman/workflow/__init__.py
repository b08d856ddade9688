"""Workflow model, YAML loading and scaffolding."""
