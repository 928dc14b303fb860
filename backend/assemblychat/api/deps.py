"""FastAPI dependencies for the persistence and Gemini collaborators.

Tests swap these through ``app.dependency_overrides``.
"""

from __future__ import annotations

from assemblychat.storage.database import get_session_factory
from assemblychat.storage.repo import ChatRepository
from assemblychat.utils.gemini import GeminiGateway


def get_repository() -> ChatRepository:
    return ChatRepository(get_session_factory())


def get_gateway() -> GeminiGateway:
    # Client creation is lazy; an unconfigured key is reported by the route
    return GeminiGateway()
