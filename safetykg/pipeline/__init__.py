"""Pipeline orchestration."""

from safetykg.pipeline.build_pipeline import KnowledgeGraphPipeline

__all__ = ["KnowledgeGraphPipeline"]
