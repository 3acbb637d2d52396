"""Kubernetes operator for Llama Stack distributions."""
