"""Vendor packs.

Each pack exposes ``register(registry)`` adding its resource types to a
:class:`~resgraph.runtime.resource.ResourceRegistry`, and the connection
classes its resources read from.
"""
