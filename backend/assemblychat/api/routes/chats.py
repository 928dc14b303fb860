"""Chat endpoints: manual upload pipeline plus thin CRUD over persisted chats.

Every error response uses the ``{"error": "..."}`` shape the chat UI reads.
Pipeline and not-found errors are mapped by the handlers in ``main.py``.
"""

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse

from assemblychat.api.deps import get_gateway, get_repository
from assemblychat.config import settings
from assemblychat.models.contracts import (
    AssemblyStepRecord,
    ChatMetadata,
    ChatSummary,
    CreateMessageRequest,
    DeleteChatResponse,
    ErrorResponse,
    MessageRecord,
    PersistedChat,
)
from assemblychat.pipeline.orchestrator import AssemblyPipeline
from assemblychat.storage.repo import ChatRepository
from assemblychat.utils.gemini import GeminiGateway

router = APIRouter(tags=["chats"])

PDF_CONTENT_TYPE = "application/pdf"


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content=ErrorResponse(error=message).model_dump())


@router.post("/chat", response_model=PersistedChat)
async def create_chat(
    user_id: str | None = Form(None, alias="userId"),
    title: str | None = Form(None),
    file: UploadFile | None = File(None),
    repository: ChatRepository = Depends(get_repository),
    gateway: GeminiGateway = Depends(get_gateway),
):
    """Upload a PDF manual and build an illustrated assembly chat from it."""
    if not user_id or not title or file is None:
        return _error(400, "Missing userId, title or file")
    if file.content_type != PDF_CONTENT_TYPE:
        return _error(400, "Only PDF manuals are supported")

    pdf_bytes = await file.read()
    if not pdf_bytes:
        return _error(400, "Uploaded file is empty")
    if len(pdf_bytes) > settings.max_upload_bytes:
        return _error(
            400, f"File too large: {len(pdf_bytes)} bytes (max {settings.max_upload_bytes})"
        )

    if not gateway.configured:
        return _error(500, "Gemini API key is not configured")

    metadata = ChatMetadata(user_id=user_id, title=title, file_name=file.filename or "manual.pdf")
    return await AssemblyPipeline(gateway, repository).run(pdf_bytes, metadata)


@router.get("/chat", response_model=list[ChatSummary])
async def list_chats(repository: ChatRepository = Depends(get_repository)):
    return await repository.list_chats()


@router.get("/chat/user/{user_id}", response_model=list[ChatSummary])
async def list_user_chats(user_id: str, repository: ChatRepository = Depends(get_repository)):
    return await repository.list_chats(user_id=user_id)


@router.delete("/chat/{chat_id}", response_model=DeleteChatResponse)
async def delete_chat(chat_id: str, repository: ChatRepository = Depends(get_repository)):
    """Delete a chat; its document goes too once no other chat uses it."""
    await repository.delete_chat(chat_id)
    return DeleteChatResponse()


@router.get("/assembly/{chat_id}", response_model=list[AssemblyStepRecord])
async def list_assembly_steps(chat_id: str, repository: ChatRepository = Depends(get_repository)):
    return await repository.list_steps(chat_id)


@router.get("/messages/{chat_id}", response_model=list[MessageRecord])
async def list_messages(chat_id: str, repository: ChatRepository = Depends(get_repository)):
    return await repository.list_messages(chat_id)


@router.post("/messages/{chat_id}", response_model=MessageRecord)
async def create_message(
    chat_id: str,
    body: CreateMessageRequest,
    repository: ChatRepository = Depends(get_repository),
):
    if not body.content.strip():
        return _error(400, "chatId and content are required")
    return await repository.add_message(chat_id, body.content)
