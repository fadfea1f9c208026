"""FastAPI endpoints for buyer/seller messaging."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from vroom_messaging.domain.messaging.schemas import (
	ConversationHistoryResponse,
	ConversationSummary,
	MessageIntent,
	SendMessageResponse,
	StartConversationRequest,
	UnreadCountResponse,
	UserConversationResponse,
)
from vroom_messaging.domain.messaging.service import MessagingService, get_service
from vroom_messaging.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: MessagingService = Depends(get_service),
) -> List[ConversationSummary]:
	return await service.list_conversations(auth_user)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: MessagingService = Depends(get_service),
) -> UnreadCountResponse:
	return UnreadCountResponse(count=await service.unread_count(auth_user))


@router.get("/conversation/{conversation_id}", response_model=ConversationHistoryResponse)
async def conversation_history_endpoint(
	conversation_id: str,
	limit: Optional[int] = Query(default=None),
	offset: int = Query(default=0, ge=0),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: MessagingService = Depends(get_service),
) -> ConversationHistoryResponse:
	return await service.conversation_history(auth_user, conversation_id, limit=limit, offset=offset)


@router.get("/user/{other_user_id}", response_model=UserConversationResponse)
async def conversation_with_user_endpoint(
	other_user_id: str,
	limit: Optional[int] = Query(default=None),
	offset: int = Query(default=0, ge=0),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: MessagingService = Depends(get_service),
) -> UserConversationResponse:
	return await service.conversation_with_user(auth_user, other_user_id, limit=limit, offset=offset)


@router.get("/product/{product_id}", response_model=ConversationHistoryResponse)
async def product_conversation_endpoint(
	product_id: str,
	limit: Optional[int] = Query(default=None),
	offset: int = Query(default=0, ge=0),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: MessagingService = Depends(get_service),
) -> ConversationHistoryResponse:
	return await service.conversation_for_product(auth_user, product_id, limit=limit, offset=offset)


@router.post("", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message_endpoint(
	payload: MessageIntent,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: MessagingService = Depends(get_service),
) -> SendMessageResponse:
	return await service.send(auth_user.id, payload, channel="rest")


@router.post("/start", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def start_conversation_endpoint(
	payload: StartConversationRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: MessagingService = Depends(get_service),
) -> SendMessageResponse:
	return await service.send(auth_user.id, payload.to_intent(), channel="rest")
