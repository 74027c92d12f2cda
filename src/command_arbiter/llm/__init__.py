"""
LLM boundary: request/response contract, prompt and an OpenAI-compatible client.
"""

from .client import BoundedLLMClient, LLMStats
from .schemas import ArbitrationRequest, ArbitrationResponse, LLMCandidate

__all__ = [
    'ArbitrationRequest',
    'ArbitrationResponse',
    'LLMCandidate',
    'BoundedLLMClient',
    'LLMStats',
]
