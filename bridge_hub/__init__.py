"""Slack and model-API glue for the bridge.

Design goals:
- Keep the core (``bridge_core``) free of network code.
- One async HTTP client (httpx) per collaborator, injected where used.
- Tools are small modules registered with a single registry.
"""
