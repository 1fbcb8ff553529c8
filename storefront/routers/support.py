from fastapi import APIRouter, Depends
from sqlmodel import Session

from storefront.database import get_session
from storefront.repositories.config_repo import ConfigRepository
from storefront.schemas.support import SupportChatRequest, SupportChatResponse
from storefront.services.config_service import ConfigService
from storefront.services.support_service import SupportService

router = APIRouter(prefix="/support", tags=["Support"])

service = SupportService(ConfigService(ConfigRepository()))


@router.post("/chat", response_model=SupportChatResponse)
def chat(payload: SupportChatRequest, session: Session = Depends(get_session)):
    return SupportChatResponse(reply=service.chat(session, payload.message))
