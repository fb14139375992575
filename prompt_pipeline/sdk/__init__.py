"""
SDK adapters for the pipeline's external collaborators.

Provides the model service and the web search tool.
"""

from .openai_client import OpenAIModelService
from .web_search import GoogleSearchTool

__all__ = ["OpenAIModelService", "GoogleSearchTool"]
