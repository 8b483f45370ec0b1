"""
Marginalia Nodes - Composable LLM Processing Stages

Each node is an async function ``(NodeContext, LLMClient, params)``.

Transform-class (return StageResult, degrade to their input):
- translate_node, polish_node, query_transform_node

Generation-class (raise on failure):
- chat_node, chat_stream_node, synthesis_node, generate_note_node
"""

from .base import NodeContext, StageResult
from .chat import ChatParams, chat_node, chat_stream_node
from .generate_note import GenerateNoteParams, generate_note_node
from .polish import PolishParams, polish_node
from .query_transform import QueryTransformParams, query_transform_node
from .synthesis import SynthesisParams, synthesis_node
from .translate import TranslateParams, translate_node

__all__ = [
    "NodeContext",
    "StageResult",
    "ChatParams",
    "chat_node",
    "chat_stream_node",
    "GenerateNoteParams",
    "generate_note_node",
    "PolishParams",
    "polish_node",
    "QueryTransformParams",
    "query_transform_node",
    "SynthesisParams",
    "synthesis_node",
    "TranslateParams",
    "translate_node",
]
