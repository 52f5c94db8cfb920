"""
Mock data package
"""

from .ollama_mock import FakeOllamaClient, FakeCloudProvider, TOOLS_TEMPLATE
from .fixtures import (
    make_suite,
    make_question_result,
    make_category_result,
    make_tag_result,
    make_results_file,
    logprobs,
)

__all__ = [
    "FakeOllamaClient",
    "FakeCloudProvider",
    "TOOLS_TEMPLATE",
    "make_suite",
    "make_question_result",
    "make_category_result",
    "make_tag_result",
    "make_results_file",
    "logprobs",
]
