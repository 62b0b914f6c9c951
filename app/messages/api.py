from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
import logging

from app.auth.dependencies import get_current_user, resolve_user_from_token
from app.db.mongo import get_database
from app.messages.realtime import WebSocketMessage, manager
from app.messages.schemas import MessageCreate, ReactionCreate
from app.messages.services import MessageService
from app.utils.errors import AppError, AuthenticationError
from app.utils.mongodb_utils import prepare_model_for_mongodb
from app.utils.responses import paginated_response, success_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/messages", tags=["messages"])
ws_router = APIRouter(tags=["realtime"])


# ===============================
# CONVERSATIONS
# ===============================
@router.get("/conversations")
async def get_conversations(current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    return success_response(await MessageService(db).get_conversations(current_user))


@router.get("/conversation/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    messages, total = await MessageService(db).get_conversation(conversation_id, current_user, page, limit)
    return paginated_response(messages, page, limit, total)


@router.put("/conversation/{conversation_id}/lu")
async def marquer_conversation_lue(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    service = MessageService(db)
    await service._check_participant(conversation_id, current_user)
    count = await service.marquer_conversation_lue(conversation_id, current_user)
    return success_response({"messagesMarques": count}, "Conversation marquée comme lue")


# ===============================
# ENVOI / LECTURE
# ===============================
@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(
    message: MessageCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    created = await MessageService(db).send_message(current_user, prepare_model_for_mongodb(message))
    return success_response(created, "Message envoyé", status.HTTP_201_CREATED)


@router.get("/non-lus/count")
async def compter_non_lus(current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    return success_response({"count": await MessageService(db).compter_non_lus(current_user)})


@router.get("/rechercher")
async def rechercher(
    q: str = Query(..., min_length=2),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    messages, total = await MessageService(db).rechercher(current_user, q, page, limit)
    return paginated_response(messages, page, limit, total)


@router.get("/statistiques")
async def statistiques(current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    return success_response(await MessageService(db).statistiques(current_user))


@router.put("/{message_id}/lu")
async def marquer_lu(message_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    return success_response(await MessageService(db).marquer_lu(message_id, current_user), "Message marqué comme lu")


# ===============================
# RÉACTIONS / SUPPRESSION
# ===============================
@router.post("/{message_id}/reaction")
async def ajouter_reaction(
    message_id: str,
    data: ReactionCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    message = await MessageService(db).ajouter_reaction(message_id, current_user, data.emoji)
    return success_response(message, "Réaction ajoutée")


@router.delete("/{message_id}/reaction")
async def retirer_reaction(message_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    message = await MessageService(db).retirer_reaction(message_id, current_user)
    return success_response(message, "Réaction retirée")


@router.delete("/{message_id}")
async def supprimer_message(message_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    await MessageService(db).supprimer_message(message_id, current_user)
    return success_response(message="Message supprimé")


# ===============================
# TEMPS RÉEL : /ws?token=<jwt>
# ===============================
async def send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json(WebSocketMessage(type="error", data={"message": message}).model_dump(mode="json"))


@ws_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, db=Depends(get_database)):
    try:
        user = await resolve_user_from_token(websocket.query_params.get("token"), db)
    except AuthenticationError as e:
        logger.warning(f"⛔ Handshake WebSocket refusé : {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = str(user["_id"])
    service = MessageService(db, manager)
    await manager.connect(websocket, user_id)
    try:
        while True:
            frame = await websocket.receive_json()
            event = frame.get("type")
            data = frame.get("data") or {}

            if event == "join-room":
                try:
                    await service._check_participant(data.get("conversationId"), user)
                except AppError as e:
                    await send_error(websocket, e.message)
                    continue
                manager.join(data["conversationId"], websocket)
                await websocket.send_json(
                    WebSocketMessage(type="room-joined", data={"conversationId": data["conversationId"]}).model_dump(mode="json")
                )

            elif event == "leave-room":
                if data.get("conversationId"):
                    manager.leave(data["conversationId"], websocket)

            elif event == "send-message":
                try:
                    message = MessageCreate(**data)
                    # Persisté puis relayé en receive-message par le service
                    await service.send_message(user, prepare_model_for_mongodb(message))
                except ValidationError as e:
                    await send_error(websocket, str(e.errors()[0].get("msg", "Données invalides")))
                except AppError as e:
                    await send_error(websocket, e.message)

            else:
                await send_error(websocket, f"Événement inconnu : {event}")
    except WebSocketDisconnect as e:
        logger.info(f"🔌 Socket fermée par le client : user={user_id} code={e.code}")
    finally:
        manager.disconnect(websocket)
