"""
Repository layer for data access.

Provides the per-entity store client and the registry that binds each
exposed entity to its descriptor, policy and ORM model.
"""
