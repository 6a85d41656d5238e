"""Entity alignment."""

from safetykg.alignment.service import AlignmentService, merge_entities, property_similarity

__all__ = ["AlignmentService", "merge_entities", "property_similarity"]
