# storefront/services/support_service.py
"""
Support chatbot: a single OpenAI chat completion grounded on a small
markdown knowledge base.
"""
import logging
from pathlib import Path

import openai
from fastapi import HTTPException, status
from openai import OpenAI
from sqlmodel import Session

from storefront.core.config import get_settings
from storefront.services.config_service import ConfigService

settings = get_settings()
logger = logging.getLogger(__name__)

KB_MAX_FILES = 5

DEFAULT_SYSTEM_PROMPT = (
    f"You are {settings.BRAND_NAME} Support, a friendly, concise assistant for "
    f"{settings.BRAND_NAME}. Use the provided knowledgebase to answer questions about "
    "the site, navigation, energetic practices, and products. Be clear that products "
    "are metaphysical energetic tools, not medical devices. Avoid medical claims. "
    "If users ask about broken links or errors, suggest contacting support. "
    "If unsure, ask a clarifying question."
)

NOT_CONFIGURED_REPLY = (
    "AI service is not configured yet. Please try again later or contact support."
)
PROVIDER_ERROR_REPLY = "I had trouble reaching the AI service. Please try again."
EMPTY_REPLY = "I had trouble formulating a response."


def make_openai_client() -> OpenAI:
    return OpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.HTTP_TIMEOUT_SECONDS)


def load_knowledge_base(kb_dir: str | Path, limit: int = KB_MAX_FILES) -> str:
    """First `limit` markdown files (by name), joined with separators."""
    root = Path(kb_dir)
    if not root.is_dir():
        return ""
    files = sorted(p for p in root.iterdir() if p.is_file() and p.suffix.lower() == ".md")
    parts = []
    for path in files[:limit]:
        try:
            parts.append(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping KB file %s: %s", path.name, e)
    return "\n\n---\n\n".join(parts)


class SupportService:
    def __init__(self, config_service: ConfigService):
        self.config_service = config_service

    def chat(self, session: Session, message) -> str:
        if not isinstance(message, str) or not message.strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid input",
            )

        if not settings.OPENAI_API_KEY:
            return NOT_CONFIGURED_REPLY

        support = self.config_service.support(session)
        system = support.description.strip() or DEFAULT_SYSTEM_PROMPT
        kb = load_knowledge_base(settings.SUPPORT_KB_DIR)
        prompt = f"Knowledgebase:\n\n{kb}\n\nUser question: {message.strip()}"

        try:
            completion = make_openai_client().chat.completions.create(
                model=settings.OPENAI_MODEL,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.4,
                max_tokens=600,
            )
        except openai.OpenAIError as e:
            logger.error("OpenAI error: %s", e)
            return PROVIDER_ERROR_REPLY

        if not completion.choices:
            return EMPTY_REPLY
        return completion.choices[0].message.content or EMPTY_REPLY
