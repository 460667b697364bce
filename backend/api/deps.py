"""Dependencies resolving the service objects owned by the application."""

from fastapi import Request

from backend.llm_client import LLMClient
from ingestion.pipeline import ImportManager


def get_import_manager(request: Request) -> ImportManager:
    return request.app.state.imports


def get_llm(request: Request) -> LLMClient:
    """The app's chat client, constructed on first use so startup needs no API key."""
    if request.app.state.llm is None:
        request.app.state.llm = LLMClient()
    return request.app.state.llm
