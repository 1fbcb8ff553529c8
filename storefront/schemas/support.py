from typing import Any

from sqlmodel import SQLModel


class SupportChatRequest(SQLModel):
    # Any so a non-string message reaches the service and gets its 400
    message: Any = None


class SupportChatResponse(SQLModel):
    reply: str
