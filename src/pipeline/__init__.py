"""Deployment pipeline orchestration."""

from src.pipeline.controller import PipelineController, PipelineResult

__all__ = ["PipelineController", "PipelineResult"]
