from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, EmailStr, Field

from coach_ledger.core.errors import MissingIdentityError
from coach_ledger.core.progress_protocol import WORKFLOW_PROGRESS_TYPES, progress_instructions
from coach_ledger.core.schemas import (
    AttachmentMeta,
    ConversationEndResult,
    ProgressInstructions,
    ReplyRecord,
    TurnRecord,
)
from coach_ledger.services.conversations import CoachingMode, Workflow
from coach_ledger.services.ledger import Ledger, get_ledger

router = APIRouter(prefix="/chat", tags=["chat"])


class TurnRequest(BaseModel):
    external_id: Optional[str] = Field(default=None, max_length=255)
    email: Optional[EmailStr] = None
    conversation_id: Optional[str] = Field(default=None, max_length=64)
    coaching_mode: Optional[CoachingMode] = None
    workflow: Optional[Workflow] = None
    message: Optional[str] = Field(default=None, max_length=20000)
    attachments: list[AttachmentMeta] = Field(default_factory=list, max_length=20)


class ReplyRequest(BaseModel):
    conversation_id: str = Field(min_length=1, max_length=64)
    reply: str = Field(max_length=60000)
    workflow: Optional[Workflow] = None


class ConversationCreateRequest(BaseModel):
    external_id: Optional[str] = Field(default=None, max_length=255)
    email: Optional[EmailStr] = None
    coaching_mode: Optional[CoachingMode] = None
    workflow: Optional[Workflow] = None


class ConversationEndRequest(BaseModel):
    external_id: Optional[str] = Field(default=None, max_length=255)
    email: Optional[EmailStr] = None


@router.post("/turns", response_model=TurnRecord)
def record_turn(payload: TurnRequest, ledger: Ledger = Depends(get_ledger)) -> TurnRecord:
    if not (payload.message or "").strip() and not payload.attachments:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing message")
    return ledger.record_turn(
        external_id=payload.external_id,
        email=payload.email,
        conversation_id=payload.conversation_id,
        coaching_mode=payload.coaching_mode.value if payload.coaching_mode else None,
        workflow=payload.workflow.value if payload.workflow else None,
        user_text=payload.message,
        attachments=payload.attachments,
    )


@router.post("/replies", response_model=ReplyRecord)
def record_reply(payload: ReplyRequest, ledger: Ledger = Depends(get_ledger)) -> ReplyRecord:
    return ledger.record_reply(
        conversation_id=payload.conversation_id,
        raw_text=payload.reply,
        workflow=payload.workflow.value if payload.workflow else None,
    )


@router.post("/conversations", response_model=TurnRecord, status_code=status.HTTP_201_CREATED)
def create_conversation(payload: ConversationCreateRequest, ledger: Ledger = Depends(get_ledger)) -> TurnRecord:
    try:
        return ledger.start_conversation(
            external_id=payload.external_id,
            email=payload.email,
            coaching_mode=payload.coaching_mode.value if payload.coaching_mode else None,
            workflow=payload.workflow.value if payload.workflow else None,
        )
    except MissingIdentityError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.reason) from exc


@router.post("/conversations/{conversation_id}/end", response_model=ConversationEndResult)
def end_conversation(
    conversation_id: str,
    payload: ConversationEndRequest,
    ledger: Ledger = Depends(get_ledger),
) -> ConversationEndResult:
    try:
        return ledger.end_conversation(conversation_id, external_id=payload.external_id, email=payload.email)
    except MissingIdentityError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.reason) from exc


@router.get("/instructions", response_model=ProgressInstructions)
def get_progress_instructions(workflow: Optional[Workflow] = Query(default=None)) -> ProgressInstructions:
    """Prompt block the chat service appends so replies carry a progress payload."""
    if workflow is None:
        return ProgressInstructions()
    progress_type = WORKFLOW_PROGRESS_TYPES.get(workflow.value)
    return ProgressInstructions(
        workflow=workflow.value,
        progress_type=progress_type.value if progress_type else None,
        instructions=progress_instructions(workflow.value),
    )
