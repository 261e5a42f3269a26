from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, EmailStr, Field

from coach_ledger.core.errors import InvalidActionError, MissingIdentityError, OwnershipError
from coach_ledger.core.schemas import AccountSummary, ConversationItem, MessageActionResult, MessageItem
from coach_ledger.services.ledger import Ledger, get_ledger

router = APIRouter(prefix="/account", tags=["account"])


class ConversationListResponse(BaseModel):
    ok: bool = True
    conversations: list[ConversationItem]


class ConversationMessagesResponse(BaseModel):
    conversation_id: str
    messages: list[MessageItem]


class MessageActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=16)
    message_id: int
    external_id: Optional[str] = Field(default=None, max_length=255)
    email: Optional[EmailStr] = None


@router.get("/summary", response_model=AccountSummary)
def get_account_summary(
    external_id: Optional[str] = Query(default=None, max_length=255),
    email: Optional[str] = Query(default=None, max_length=255),
    ledger: Ledger = Depends(get_ledger),
) -> AccountSummary:
    return ledger.get_account_summary(external_id=external_id, email=email)


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    external_id: Optional[str] = Query(default=None, max_length=255),
    email: Optional[str] = Query(default=None, max_length=255),
    ledger: Ledger = Depends(get_ledger),
) -> ConversationListResponse:
    return ConversationListResponse(conversations=ledger.list_conversations(external_id=external_id, email=email))


@router.get("/conversations/{conversation_id}/messages", response_model=ConversationMessagesResponse)
def list_conversation_messages(
    conversation_id: str,
    external_id: Optional[str] = Query(default=None, max_length=255),
    email: Optional[str] = Query(default=None, max_length=255),
    limit: int = Query(default=50, ge=1, le=200),
    ledger: Ledger = Depends(get_ledger),
) -> ConversationMessagesResponse:
    messages = ledger.list_conversation_messages(
        conversation_id, external_id=external_id, email=email, limit=limit
    )
    return ConversationMessagesResponse(conversation_id=conversation_id, messages=messages)


@router.post("/messages/actions", response_model=MessageActionResult)
def apply_message_action(payload: MessageActionRequest, ledger: Ledger = Depends(get_ledger)) -> MessageActionResult:
    try:
        return ledger.apply_message_action(
            payload.action,
            payload.message_id,
            external_id=payload.external_id,
            email=payload.email,
        )
    except (InvalidActionError, MissingIdentityError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.reason) from exc
    except OwnershipError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.reason) from exc
