"""Service layer orchestrations for StudyRAG."""

from .artifacts import ArtifactRepository
from .generation import GenerationBackend, GenerationConfig, TemplateGenerator, TransformersGenerator
from .orchestrator import (
    AnswerRequest,
    GenerationMode,
    GenerationOrchestrator,
    NotesRequest,
    OrchestratorConfig,
    QuizRequest,
)
from .pipeline import DocumentPipeline
from .prompts import PromptBuilder, PromptBuilderConfig
from .segmentation import SegmentationConfig, TopicSegmenter

__all__ = [
    "AnswerRequest",
    "ArtifactRepository",
    "DocumentPipeline",
    "GenerationBackend",
    "GenerationConfig",
    "GenerationMode",
    "GenerationOrchestrator",
    "NotesRequest",
    "OrchestratorConfig",
    "PromptBuilder",
    "PromptBuilderConfig",
    "QuizRequest",
    "SegmentationConfig",
    "TemplateGenerator",
    "TopicSegmenter",
    "TransformersGenerator",
]
