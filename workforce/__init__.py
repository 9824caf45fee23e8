"""Workload capacity engine."""
