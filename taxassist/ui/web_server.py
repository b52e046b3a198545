"""HTTP endpoint: FastAPI wrapper around the engine.

POST /api/messages accepts a chat activity and returns the replies to post
back into the conversation. GET /health is a liveness probe.
"""

from __future__ import annotations

import re
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from taxassist.config import TaxAssistConfig
from taxassist.core.engine import Engine

logger = structlog.get_logger()


class ConversationRef(BaseModel):
    id: str = Field(min_length=1)


class ChannelAccount(BaseModel):
    id: str
    name: str | None = None


class Entity(BaseModel):
    """Activity entity; only mentions are read."""

    type: str
    mentioned: ChannelAccount | None = None
    text: str | None = None


def strip_recipient_mention(
    text: str,
    recipient: ChannelAccount | None,
    entities: list[Entity],
) -> str:
    """Remove the bot's own ``<at>...</at>`` mention; other mentions stay.

    The markup comes from mention entities addressed to ``recipient``, or
    ``<at>{recipient.name}</at>`` when the channel sends no entities.
    """
    if recipient is None:
        return text.strip()

    markups = {
        e.text
        for e in entities
        if e.type == "mention" and e.mentioned and e.mentioned.id == recipient.id and e.text
    }
    if recipient.name:
        markups.add(f"<at>{recipient.name}</at>")

    for markup in markups:
        text = re.sub(re.escape(markup), "", text, flags=re.IGNORECASE)
    return text.strip()


class Activity(BaseModel):
    """Subset of a chat activity the assistant cares about."""

    type: str
    conversation: ConversationRef
    text: str | None = None
    recipient: ChannelAccount | None = None
    entities: list[Entity] = Field(default_factory=list)
    members_added: list[ChannelAccount] = Field(default_factory=list, alias="membersAdded")

    model_config = {"populate_by_name": True}


class ActivityReply(BaseModel):
    replies: list[str] = Field(default_factory=list)


class WebServer:
    """FastAPI-based message endpoint."""

    def __init__(self, engine: Engine, config: TaxAssistConfig) -> None:
        self.engine = engine
        self.config = config
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="U.S. Tax Assistant", docs_url=None, redoc_url=None)

        @app.get("/health", response_class=PlainTextResponse)
        async def health():
            return "Bot is running"

        @app.post("/api/messages", response_model=ActivityReply)
        async def messages(activity: Activity):
            return await self.handle_activity(activity)

        @app.exception_handler(RequestValidationError)
        async def invalid_activity(request: Any, exc: RequestValidationError):
            logger.warning("activity_invalid", errors=len(exc.errors()))
            return JSONResponse(status_code=400, content={"detail": "Invalid activity"})

        @app.exception_handler(Exception)
        async def unhandled_error(request: Any, exc: Exception):
            logger.error("activity_unhandled_error", error=str(exc), path=str(request.url.path))
            return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

        return app

    async def handle_activity(self, activity: Activity) -> ActivityReply:
        conversation_id = activity.conversation.id
        logger.info("activity_received", type=activity.type, conversation_id=conversation_id)

        if activity.type == "message":
            if activity.text is None:
                raise HTTPException(status_code=400, detail="message activity without text")
            reply = await self.engine.process_message(
                conversation_id,
                strip_recipient_mention(activity.text, activity.recipient, activity.entities),
            )
            return ActivityReply(replies=reply.messages)

        if activity.type == "conversationUpdate" and any(m.id for m in activity.members_added):
            return ActivityReply(replies=self.engine.welcome())

        return ActivityReply()

    async def run(self) -> None:
        """Start the web server (blocks until shutdown)."""
        host = self.config.web.host
        port = self.config.web.port
        logger.info("web_server_starting", host=host, port=port)

        uv_config = uvicorn.Config(
            self.app,
            host=host,
            port=port,
            log_level="warning",
        )
        server = uvicorn.Server(uv_config)
        await server.serve()
