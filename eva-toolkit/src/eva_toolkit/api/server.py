"""
HTTP API.

'create_app' builds the FastAPI application around a 'ChatController'. The
chat route streams the turn as newline-delimited JSON ('application/x-ndjson');
everything before the first event (conversation creation, persisting the user
message) runs before the response starts, so those failures come back as plain
HTTP errors and the client can retry the whole submission.

Storage errors are mapped to status codes by exception handlers rather than in
each route.
"""

from collections.abc import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from eva_toolkit.api.auth.base import AuthProvider
from eva_toolkit.conversation_database.controller import (
    ChatController,
    ClientConversation,
    PreparedTurn,
    ReportItem,
    TurnRequest,
)
from eva_toolkit.conversation_database.data_models.annotation import PartMetadataUpdate
from eva_toolkit.conversation_database.data_models.conversation import Conversation
from eva_toolkit.conversation_database.data_models.message import Message, MessageKey
from eva_toolkit.conversation_database.exceptions import (
    ConversationAlreadyExistsError,
    ConversationNotFoundError,
    MessageNotFoundError,
    PartialDeletionError,
)
from eva_toolkit.streaming.events import encode_event

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConversationNotFoundError)
    async def conversation_not_found(request: Request, exc: ConversationNotFoundError) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(MessageNotFoundError)
    async def message_not_found(request: Request, exc: MessageNotFoundError) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(ConversationAlreadyExistsError)
    async def conversation_exists(request: Request, exc: ConversationAlreadyExistsError) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(PartialDeletionError)
    async def partial_deletion(request: Request, exc: PartialDeletionError) -> JSONResponse:
        logger.error(f"{request.url.path}: {exc}")
        return _error(502, str(exc))

    @app.exception_handler(ValueError)
    async def invalid_value(request: Request, exc: ValueError) -> JSONResponse:
        return _error(400, str(exc))


def create_app(
    controller: ChatController,
    auth_provider: AuthProvider,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    app = FastAPI(title="EVA Chat API")
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    register_exception_handlers(app)
    auth_provider.bind_to_app(app)
    current_user = Depends(auth_provider.get_current_user_id)

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.post("/api/chat")
    async def chat(turn_request: TurnRequest, user_id: str = current_user) -> StreamingResponse:
        turn = await controller.start_turn(turn_request, user_id)

        async def stream(prepared: PreparedTurn) -> AsyncIterator[bytes]:
            async for event in controller.stream_turn(prepared):
                yield encode_event(event)

        return StreamingResponse(stream(turn), media_type=NDJSON_MEDIA_TYPE)

    @app.get("/api/conversations")
    async def get_conversations(user_id: str = current_user) -> list[Conversation]:
        return await controller.get_conversations(user_id)

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str, user_id: str = current_user) -> ClientConversation:
        return await controller.get_conversation(user_id, conversation_id)

    @app.delete("/api/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(conversation_id: str, user_id: str = current_user) -> Response:
        await controller.delete_conversation(user_id, conversation_id)
        return Response(status_code=204)

    @app.get("/api/conversations/{conversation_id}/messages")
    async def get_messages(
        conversation_id: str,
        keys_only: bool = Query(False),
        user_id: str = current_user,
    ) -> list[Message] | list[MessageKey]:
        return await controller.get_messages(user_id, conversation_id, keys_only=keys_only)

    @app.post("/api/conversations/{conversation_id}/messages")
    async def save_message(conversation_id: str, message: Message, user_id: str = current_user) -> Message:
        return await controller.save_message(user_id, conversation_id, message)

    @app.patch("/api/conversations/{conversation_id}/messages/{message_id}/parts/{part_idx}", status_code=204)
    async def update_message_part(
        conversation_id: str,
        message_id: str,
        part_idx: int,
        updates: PartMetadataUpdate,
        user_id: str = current_user,
    ) -> Response:
        await controller.update_message_part(user_id, conversation_id, message_id, part_idx, updates)
        return Response(status_code=204)

    @app.get("/api/conversations/{conversation_id}/report")
    async def get_report(conversation_id: str, user_id: str = current_user) -> list[ReportItem]:
        return await controller.get_report(user_id, conversation_id)

    @app.get("/api/objects/url")
    async def get_object_url(key: str = Query(...), user_id: str = current_user) -> dict[str, str]:
        if controller.object_store is None:
            raise HTTPException(status_code=404, detail="Object storage is not configured")
        return {"url": await controller.get_object_url(user_id, key)}

    return app
