"""Relation resolution between entities."""

from neodb.relations.resolver import RelationResolver, ResolvedRelation, parse_includes

__all__ = [
    "RelationResolver",
    "ResolvedRelation",
    "parse_includes",
]
