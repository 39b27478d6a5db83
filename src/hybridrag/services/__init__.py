"""Service layer orchestrations for HybridRAG."""

from .answer import AnswerSynthesizer, serialize_sources, split_stream
from .generation import GenerationBackend, GenerationConfig, OpenAICompatibleGenerator, TemplateGenerator
from .prompts import FOLLOW_UP_DELIMITER, NO_CONTEXT_INSTRUCTION, SOURCES_DELIMITER, build_system_prompt

__all__ = [
    "AnswerSynthesizer",
    "FOLLOW_UP_DELIMITER",
    "GenerationBackend",
    "GenerationConfig",
    "NO_CONTEXT_INSTRUCTION",
    "OpenAICompatibleGenerator",
    "SOURCES_DELIMITER",
    "TemplateGenerator",
    "build_system_prompt",
    "serialize_sources",
    "split_stream",
]
