"""Core control plane components."""
