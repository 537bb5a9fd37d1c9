"""Execution engine: DAG building, level execution and durable runs."""
