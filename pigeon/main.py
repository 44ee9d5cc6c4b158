import base64
import binascii
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Tuple

from fastapi import Depends, FastAPI, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from pigeon import contacts, storage, users
from pigeon.auth import CurrentUser, create_access_token, user_id_from_token
from pigeon.config import settings
from pigeon.delivery import (
    CONTACT_ADDED,
    CONTACT_DELETED,
    CONTACT_UPDATED,
    EVENT_CONTACT_ADDED,
    EVENT_CONTACT_DELETED,
    EVENT_CONTACT_UPDATED,
    EVENT_SOCKET_ERROR,
    PRIVATE_MESSAGE,
    DeliveryRouter,
    contact_error_frame,
    error_frame,
)
from pigeon.errors import NotFound, PigeonError, UserNotFound, ValidationFailed
from pigeon.logging_utils import RequestLoggingMiddleware, log_delivery_data, log_realtime_frame, setup_logging
from pigeon.metrics import get_metrics, get_metrics_content_type
from pigeon.registry import SessionRegistry
from pigeon.schemas import (
    ContactAddedPayload,
    ContactCreateRequest,
    ContactDeletedPayload,
    ContactResponse,
    ContactUpdatedPayload,
    ContactUpdateRequest,
    DeleteResponse,
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PhoneAvailabilityResponse,
    PrivateMessagePayload,
    RegisterPayload,
    RegisterRequest,
    SendMessageRequest,
    SendMessageResponse,
    UnreadCountResponse,
    UpdateProfileRequest,
    UserResponse,
)
from pigeon.storage import SessionLocal, check_db_health, get_db, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Startup: initialize database, start with an empty session registry
    - Shutdown: nothing to flush, the registry is not persisted
    """
    init_db()
    registry = SessionRegistry()
    app.state.registry = registry
    app.state.delivery = DeliveryRouter(registry, dedup_window_ms=settings.DEDUP_WINDOW_MS)
    yield


app = FastAPI(
    title="Pigeon Messenger API",
    description="One-to-one messaging with real-time delivery and contact reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(PigeonError)
async def pigeon_error_handler(request: Request, exc: PigeonError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def user_response(user) -> UserResponse:
    return UserResponse(
        id=user.id,
        phone_number=user.phone_number,
        username=user.username,
        created_at=user.created_at,
        has_avatar=user.avatar is not None,
    )


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    401: {"model": ErrorResponse, "description": "Authentication required"},
    404: {"model": ErrorResponse, "description": "Not found"},
}


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. JWT_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.JWT_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="JWT_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready", realtime_connections=request.app.state.registry.online_count)


# =============================================================================
# User Routes
# =============================================================================

@app.post("/api/users/register", response_model=UserResponse, status_code=201, responses={409: {"model": ErrorResponse}})
async def register_user(body: RegisterRequest, db: Session = Depends(get_db)) -> UserResponse:
    logger.info("Registration request received")
    user = users.register(db, body.phone_number, body.username, body.password)
    return user_response(user)


@app.post("/api/users/login", response_model=LoginResponse, responses=ERROR_RESPONSES)
async def login(body: LoginRequest, db: Session = Depends(get_db)) -> LoginResponse:
    user = users.authenticate(db, body.phone_number, body.password)
    logger.info(f"User {user.id} logged in")
    return LoginResponse(token=create_access_token(user), user=user_response(user))


@app.get("/api/users/me", response_model=UserResponse, responses=ERROR_RESPONSES)
async def get_me(user: CurrentUser) -> UserResponse:
    return user_response(user)


@app.put("/api/users/me", response_model=UserResponse, responses=ERROR_RESPONSES)
async def update_me(body: UpdateProfileRequest, user: CurrentUser, db: Session = Depends(get_db)) -> UserResponse:
    return user_response(users.update_profile(db, user.id, body.username))


@app.get("/api/users/me/avatar", responses=ERROR_RESPONSES)
async def get_my_avatar(user: CurrentUser) -> Response:
    if user.avatar is None:
        raise NotFound("Avatar not found", code="avatar_not_found")
    return Response(content=user.avatar, media_type="image/jpeg")


@app.put("/api/users/me/avatar", response_model=UserResponse, responses=ERROR_RESPONSES)
async def set_my_avatar(request: Request, user: CurrentUser, db: Session = Depends(get_db)) -> UserResponse:
    """Store the raw request body as the user's avatar image."""
    avatar = await request.body()
    return user_response(users.set_avatar(db, user.id, avatar))


@app.get("/api/users/find-by-phone/{phone_number}", response_model=UserResponse, responses=ERROR_RESPONSES)
async def find_user_by_phone(phone_number: str, user: CurrentUser, db: Session = Depends(get_db)) -> UserResponse:
    found = users.find_by_phone(db, phone_number)
    if found is None:
        raise UserNotFound("No user found with this phone number")
    return user_response(found)


@app.get("/api/users/check-phone/{phone_number}", response_model=PhoneAvailabilityResponse, responses=ERROR_RESPONSES)
async def check_phone(phone_number: str, db: Session = Depends(get_db)) -> PhoneAvailabilityResponse:
    return PhoneAvailabilityResponse(
        phone_number=phone_number,
        available=users.is_phone_available(db, phone_number),
    )


# =============================================================================
# Contact Routes
# =============================================================================

@app.get("/api/contacts", response_model=List[ContactResponse], responses=ERROR_RESPONSES)
async def list_contacts(user: CurrentUser, db: Session = Depends(get_db)) -> List[ContactResponse]:
    return [
        contacts.to_response(db, contact, last_message)
        for contact, last_message in contacts.list_contacts(db, user.id)
    ]


@app.post(
    "/api/contacts",
    response_model=ContactResponse,
    status_code=201,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse}},
)
async def create_contact(body: ContactCreateRequest, user: CurrentUser, db: Session = Depends(get_db)) -> ContactResponse:
    logger.info(f"Creating contact for user {user.id}")
    contact = contacts.create_contact(db, user.id, body.phone_number, body.nickname)
    return contacts.to_response(db, contact)


@app.get("/api/contacts/{contact_id}", response_model=ContactResponse, responses=ERROR_RESPONSES)
async def get_contact(contact_id: int, user: CurrentUser, db: Session = Depends(get_db)) -> ContactResponse:
    contact = contacts.get_contact(db, user.id, contact_id)
    if contact.contact_user_id is None:
        contacts.backfill_link(db, contact)
    return contacts.to_response(db, contact)


@app.put("/api/contacts/{contact_id}", response_model=ContactResponse, responses=ERROR_RESPONSES)
async def update_contact(
    contact_id: int,
    body: ContactUpdateRequest,
    user: CurrentUser,
    db: Session = Depends(get_db),
) -> ContactResponse:
    contact = contacts.update_contact(db, user.id, contact_id, **contact_changes(body))
    return contacts.to_response(db, contact)


def contact_changes(body: ContactUpdateRequest) -> dict:
    """Fields present in the body only; the avatar arrives base64-encoded."""
    changes = {}
    if "nickname" in body.model_fields_set:
        changes["nickname"] = body.nickname
    if "avatar" in body.model_fields_set:
        try:
            changes["avatar"] = base64.b64decode(body.avatar, validate=True) if body.avatar else None
        except (binascii.Error, ValueError):
            raise ValidationFailed("Avatar must be base64-encoded", code="invalid_avatar")
    return changes


@app.delete("/api/contacts/{contact_id}", response_model=DeleteResponse, responses=ERROR_RESPONSES)
async def delete_contact(contact_id: int, user: CurrentUser, db: Session = Depends(get_db)) -> DeleteResponse:
    """Delete a contact and every message between the two users."""
    return DeleteResponse(**contacts.delete_contact(db, user.id, contact_id))


@app.get("/api/contacts/{contact_id}/avatar", responses=ERROR_RESPONSES)
async def get_contact_avatar(contact_id: int, user: CurrentUser, db: Session = Depends(get_db)) -> Response:
    contact = contacts.get_contact(db, user.id, contact_id)
    avatar = contact.avatar
    if avatar is None and contact.contact_user_id is not None:
        avatar = users.get_avatar(db, contact.contact_user_id)
    if avatar is None:
        raise NotFound("Avatar not found", code="avatar_not_found")
    return Response(content=avatar, media_type="image/jpeg")


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/api/messages/conversation/{contact_id}", response_model=List[MessageResponse], responses=ERROR_RESPONSES)
async def get_conversation(contact_id: int, user: CurrentUser, db: Session = Depends(get_db)) -> List[MessageResponse]:
    """
    Messages with a contact, oldest first.

    Marks every message the contact sent to the caller as read.
    """
    contact = contacts.get_contact(db, user.id, contact_id)
    if contact.contact_user_id is None and not contacts.backfill_link(db, contact):
        logger.info(f"Contact {contact.id} has no registered user, empty conversation")
        return []

    messages = storage.get_conversation(db, user.id, contact.contact_user_id)
    return [MessageResponse.model_validate(m) for m in messages]


@app.delete("/api/messages/conversation/{contact_id}", response_model=DeleteResponse, responses=ERROR_RESPONSES)
async def delete_conversation(contact_id: int, user: CurrentUser, db: Session = Depends(get_db)) -> DeleteResponse:
    contact = contacts.get_contact(db, user.id, contact_id)
    deleted = 0
    if contact.contact_user_id is not None:
        deleted = storage.delete_conversation(db, user.id, contact.contact_user_id)
    return DeleteResponse(success=True, message="Conversation deleted successfully", deleted_messages=deleted)


@app.post("/api/messages/send", response_model=SendMessageResponse, status_code=201, responses=ERROR_RESPONSES)
async def send_message(
    request: Request,
    body: SendMessageRequest,
    user: CurrentUser,
    db: Session = Depends(get_db),
) -> SendMessageResponse:
    """
    Send a message over REST.

    Runs through the same delivery router as the real-time channel: one row
    per logical send, receiver contact auto-creation, and a real-time forward
    when the receiver is online.
    """
    delivery: DeliveryRouter = request.app.state.delivery
    try:
        result = await delivery.send(
            db,
            sender_id=user.id,
            receiver_id=body.receiver_id,
            content=body.content,
            timestamp=body.timestamp,
            temp_id=body.temp_id,
            channel="rest",
        )
    except UserNotFound:
        log_delivery_data(request, result="user_not_found")
        raise

    log_delivery_data(
        request,
        message_id=result.message.id,
        dup=result.duplicate,
        result="duplicate" if result.duplicate else "created",
    )

    message = MessageResponse.model_validate(result.message)
    return SendMessageResponse(
        **message.model_dump(),
        auto_created_contact=(
            contacts.to_response(db, result.auto_created_contact) if result.auto_created_contact else None
        ),
        sender_phone_number=result.sender.phone_number,
        sender_username=result.sender.username,
        contact_id=result.sender_contact.id if result.sender_contact else None,
        temp_id=result.temp_id,
        duplicate=result.duplicate,
    )


@app.get("/api/messages/unread", response_model=List[MessageResponse], responses=ERROR_RESPONSES)
async def get_unread(user: CurrentUser, db: Session = Depends(get_db)) -> List[MessageResponse]:
    return [MessageResponse.model_validate(m) for m in storage.get_unread_messages(db, user.id)]


@app.get("/api/messages/unread/count", response_model=UnreadCountResponse, responses=ERROR_RESPONSES)
async def get_unread_count(user: CurrentUser, db: Session = Depends(get_db)) -> UnreadCountResponse:
    return UnreadCountResponse(count=storage.get_unread_count(db, user.id))


# =============================================================================
# Real-time Channel
# =============================================================================

def _unwrap_frame(event: str, data) -> Tuple[Optional[str], Any]:
    """
    Accept privateMessage{...} and message{type, payload}; a message frame
    without a type is a private message.

    Returns:
        (message type, payload), or (None, None) for any other event
    """
    if event == "privateMessage":
        return PRIVATE_MESSAGE, data
    if event == "message" and isinstance(data, dict):
        return data.get("type", PRIVATE_MESSAGE), data.get("payload", data)
    return None, None


async def _handle_register(websocket: WebSocket, delivery: DeliveryRouter, session_id: str, data) -> None:
    if not isinstance(data, dict):
        data = {"userId": data}
    try:
        payload = RegisterPayload.model_validate(data)
    except ValidationError:
        await websocket.send_json({
            "event": EVENT_SOCKET_ERROR,
            "data": {"type": "auth_error", "message": "No user ID provided"},
        })
        return

    token = data.get("token")
    if token is not None:
        try:
            token_user = user_id_from_token(token)
        except PigeonError as e:
            token_user = None
            logger.info(f"Socket registration with bad token: {e.message}")
        if token_user != payload.user_id:
            await websocket.send_json({
                "event": EVENT_SOCKET_ERROR,
                "data": {"type": "auth_error", "message": "Token does not match user"},
            })
            return

    with SessionLocal() as db:
        await delivery.register(db, payload.user_id, session_id, websocket)


def _sender_problem(delivery: DeliveryRouter, session_id: str, sender_id: int) -> Optional[Tuple[str, str]]:
    """(message, code) when this session may not act for sender_id."""
    registered_user = delivery.registry.user_for_session(session_id)
    if registered_user is None:
        return "Socket is not registered", "not_registered"
    if registered_user != sender_id:
        return "Sender mismatch", "sender_mismatch"
    return None


async def _handle_private_message(websocket: WebSocket, delivery: DeliveryRouter, session_id: str, data) -> None:
    temp_id = data.get("tempId") if isinstance(data, dict) else None
    try:
        payload = PrivateMessagePayload.model_validate(data)
    except ValidationError as e:
        logger.error(f"Invalid message format: {e.errors()[0].get('msg')}")
        await websocket.send_json(error_frame("Invalid message format", data, temp_id, code="validation_error"))
        return

    if not payload.text:
        await websocket.send_json(error_frame("Message content is required", data, temp_id, code="validation_error"))
        return

    problem = _sender_problem(delivery, session_id, payload.sender_id)
    if problem is not None:
        await websocket.send_json(error_frame(problem[0], data, temp_id, code=problem[1]))
        return

    with SessionLocal() as db:
        await _send_over_realtime(
            websocket,
            delivery,
            db,
            data,
            payload.temp_id,
            sender_id=payload.sender_id,
            receiver_id=payload.receiver_id,
            content=payload.text,
            timestamp=payload.timestamp,
        )


async def _send_over_realtime(
    websocket: WebSocket,
    delivery: DeliveryRouter,
    db: Session,
    data,
    temp_id: Optional[str],
    **send_args,
) -> None:
    """Run one send through the router, reporting failures as message_error."""
    try:
        await delivery.send(db, temp_id=temp_id, channel="realtime", **send_args)
    except PigeonError as e:
        logger.info(f"Real-time send rejected: {e.message}")
        await websocket.send_json(error_frame(e.message, data, temp_id, code=e.code))
    except Exception:
        logger.exception("Error processing private message")
        await websocket.send_json(error_frame("Failed to send message", data, temp_id, code="server_error"))


# message type -> (payload model, acknowledgment event)
CONTACT_CHANGES = {
    CONTACT_ADDED: (ContactAddedPayload, EVENT_CONTACT_ADDED),
    CONTACT_UPDATED: (ContactUpdatedPayload, EVENT_CONTACT_UPDATED),
    CONTACT_DELETED: (ContactDeletedPayload, EVENT_CONTACT_DELETED),
}


async def _handle_contact_change(
    websocket: WebSocket,
    delivery: DeliveryRouter,
    session_id: str,
    message_type: str,
    data,
) -> None:
    """
    Apply a contact add / update / delete sent on the socket.

    The owner is acknowledged with contact_added / contact_updated /
    contact_deleted. A CONTACT_ADDED frame carrying a first message then sends
    it like any private message.
    """
    model, ack_event = CONTACT_CHANGES[message_type]
    contact_id = data.get("contactId") if isinstance(data, dict) else None
    try:
        payload = model.model_validate(data)
    except ValidationError as e:
        logger.error(f"Invalid {message_type} format: {e.errors()[0].get('msg')}")
        await websocket.send_json(
            contact_error_frame(ack_event, "Invalid contact change format", contact_id, code="validation_error")
        )
        return

    problem = _sender_problem(delivery, session_id, payload.sender_id)
    if problem is not None:
        await websocket.send_json(contact_error_frame(ack_event, problem[0], contact_id, code=problem[1]))
        return

    with SessionLocal() as db:
        try:
            if message_type == CONTACT_ADDED:
                contact = await delivery.add_contact(db, payload.sender_id, payload.phone_number, payload.nickname)
            elif message_type == CONTACT_UPDATED:
                await delivery.update_contact(db, payload.sender_id, payload.contact_id, **contact_changes(payload.updates))
            else:
                await delivery.delete_contact(db, payload.sender_id, payload.contact_id)
        except PigeonError as e:
            logger.info(f"Contact change rejected: {e.message}")
            await websocket.send_json(contact_error_frame(ack_event, e.message, contact_id, code=e.code))
            return
        except Exception:
            logger.exception("Error processing contact change")
            await websocket.send_json(
                contact_error_frame(ack_event, "Failed to apply contact change", contact_id, code="server_error")
            )
            return

        if message_type == CONTACT_ADDED and payload.message:
            await _send_over_realtime(
                websocket,
                delivery,
                db,
                data,
                payload.temp_id,
                sender_id=payload.sender_id,
                receiver_id=contact.contact_user_id,
                content=payload.message,
                timestamp=payload.timestamp,
            )


@app.websocket("/ws")
async def realtime_endpoint(websocket: WebSocket):
    """
    Real-time channel. Frames are JSON text objects {"event": ..., "data": ...}.

    Errors are reported back as socket_error / message_error frames, or as a
    failed contact_* acknowledgment; the connection stays open. However the
    loop ends, the session is removed from the registry.
    """
    await websocket.accept()
    delivery: DeliveryRouter = websocket.app.state.delivery
    session_id = str(uuid.uuid4())
    logger.info(f"New client connected: session {session_id}")

    try:
        while True:
            received = await websocket.receive()
            if received["type"] == "websocket.disconnect":
                break

            raw = received.get("text")
            if raw is None:
                await websocket.send_json(error_frame("Binary frames are not supported", None, code="validation_error"))
                log_realtime_frame(session_id, None, delivery.registry.user_for_session(session_id), "binary_frame")
                continue
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json(error_frame("Invalid JSON", raw, code="validation_error"))
                log_realtime_frame(session_id, None, delivery.registry.user_for_session(session_id), "invalid_json")
                continue
            if not isinstance(frame, dict):
                await websocket.send_json(error_frame("Frame must be an object", frame, code="validation_error"))
                continue

            event = frame.get("event")
            data = frame.get("data")

            if event == "register":
                await _handle_register(websocket, delivery, session_id, data)
            else:
                message_type, payload = _unwrap_frame(event, data)
                if message_type == PRIVATE_MESSAGE:
                    await _handle_private_message(websocket, delivery, session_id, payload)
                elif isinstance(message_type, str) and message_type in CONTACT_CHANGES:
                    await _handle_contact_change(websocket, delivery, session_id, message_type, payload)
                else:
                    await websocket.send_json({
                        "event": EVENT_SOCKET_ERROR,
                        "data": {"type": "unknown_event", "message": f"Unsupported event: {message_type or event}"},
                    })
                    log_realtime_frame(session_id, event, delivery.registry.user_for_session(session_id), "unknown_event")
                    continue

            log_realtime_frame(session_id, event, delivery.registry.user_for_session(session_id))
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception(f"Real-time session {session_id} failed")
    finally:
        delivery.disconnect(session_id)
        logger.info(f"Client disconnected: session {session_id}")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
