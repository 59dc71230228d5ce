import uuid
from typing import Optional
from fastapi import APIRouter
from fastapi.exceptions import HTTPException
from pydantic import BaseModel

# Utils
from utils.log_utils import LogUtil
from utils.lock_utils import ChatLockManager

# Services
from services.session_service import SessionService
from services.flow_service import FlowService

# Exceptions
from exceptions.flow_exception import FlowException, SessionStateException


class CancelSessionRequest(BaseModel):
    reason: Optional[str] = None


class PreviewSessionRequest(BaseModel):
    flow_id: str
    chat_id: Optional[str] = None


class PreviewMessageRequest(BaseModel):
    text: str


def create_session_api(
    log_util: LogUtil,
    session_service: SessionService,
    flow_service: FlowService,
    lock_manager: ChatLockManager
) -> APIRouter:
    router = APIRouter(
        prefix="/session",
        tags=["session"],
    )

    def _raise(action: str, e: Exception):
        if isinstance(e, FlowException):
            log_util.error(service_name="SessionAPI", message=f"[SESSION] Error {action}: {e.message}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        log_util.error(service_name="SessionAPI", message=f"[SESSION] Error {action}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    @router.get("/chat/{chat_id}")
    async def get_active_session(chat_id: str):
        try:
            session = await session_service.get_active_session_for_chat(chat_id)
        except Exception as e:
            _raise("getting active session", e)
        if session is None:
            raise HTTPException(status_code=404, detail=f"No active session for chat {chat_id}")
        return session

    @router.post("/preview")
    async def start_preview(request: PreviewSessionRequest):
        """
        Run the flow's draft without delivering messages. Variables start from
        their test values.
        """
        try:
            flow = await flow_service.get_flow(request.flow_id)
            chat_id = request.chat_id or f"preview-{uuid.uuid4()}"
            async with lock_manager.hold(chat_id):
                session = await session_service.start_session(
                    flow,
                    organization_id=flow.organization_id,
                    chat_id=chat_id,
                    channel="preview",
                    preview=True
                )
        except Exception as e:
            _raise("starting preview", e)
        if session is None:
            raise HTTPException(status_code=400, detail="Flow draft has no start node")
        return session

    @router.post("/{session_id}/message")
    async def send_preview_message(session_id: str, request: PreviewMessageRequest):
        try:
            session = await session_service.get_session(session_id)
            if not session.preview:
                raise SessionStateException("Only preview sessions accept messages here")
            async with lock_manager.hold(session.chat_id):
                session = await session_service.handle_inbound_message(session, request.text)
                # No debounce in the editor preview
                return await session_service.flush_debounced_input(session)
        except Exception as e:
            _raise("sending preview message", e)

    @router.get("/{session_id}")
    async def get_session(session_id: str):
        try:
            return await session_service.get_session(session_id)
        except Exception as e:
            _raise("getting session", e)

    @router.post("/{session_id}/cancel")
    async def cancel_session(session_id: str, request: Optional[CancelSessionRequest] = None):
        try:
            return await session_service.cancel_session(session_id, reason=request.reason if request else None)
        except Exception as e:
            _raise("cancelling session", e)

    return router
