import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from pymongo import ReturnDocument

from app.db.mongo import ANNONCES, MESSAGES, USERS
from app.messages.models import (
    MessageStatut,
    MessageType,
    Priorite,
    conversation_id,
    system_message_text,
    system_message_adapter,
)
from app.messages.realtime import ConnectionManager, manager
from app.users.models import user_summary
from app.utils.errors import BusinessRuleError, NotFoundError, PermissionDeniedError
from app.utils.mongodb_utils import NOT_DELETED, to_object_id, utcnow

logger = logging.getLogger(__name__)


class MessageService:
    def __init__(self, db, relay: ConnectionManager = None):
        self.db = db
        self.collection = db[MESSAGES]
        self.relay = relay or manager

    async def get_or_404(self, message_id) -> Dict[str, Any]:
        message = await self.collection.find_one({"_id": to_object_id(message_id), **NOT_DELETED})
        if not message:
            raise NotFoundError("Message non trouvé")
        return message

    def _new_message(self, expediteur, destinataire, annonce, **fields) -> Dict[str, Any]:
        now = utcnow()
        return {
            "expediteur": expediteur,
            "destinataire": destinataire,
            "annonce": annonce,
            "demande": fields.pop("demande", None),
            "conversation": conversation_id(expediteur, destinataire, annonce),
            "contenu": fields.pop("contenu", None),
            "type": fields.pop("type", MessageType.TEXTE.value),
            "statut": MessageStatut.ENVOYE.value,
            "lu": False,
            "dateLecture": None,
            "reactions": [],
            "modifie": False,
            "supprime": False,
            "dateSuppression": None,
            "supprimePar": None,
            "createdAt": now,
            "updatedAt": now,
            **fields,
        }

    async def _relay(self, message: Dict[str, Any]) -> None:
        """Diffusion temps réel « au mieux » vers la salle de conversation et le destinataire"""
        await self.relay.broadcast_to_room(message["conversation"], "receive-message", message)
        await self.relay.send_to_user(message["destinataire"], "notification", {
            "type": "nouveau_message",
            "conversation": message["conversation"],
            "messageId": message["_id"],
        })

    # ─────────────── envoi ───────────────

    async def send_message(self, user: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        destinataire_id = to_object_id(data["destinataire"], "destinataire")
        if destinataire_id == user["_id"]:
            raise BusinessRuleError("Vous ne pouvez pas vous envoyer un message")

        destinataire = await self.db[USERS].find_one({"_id": destinataire_id, **NOT_DELETED})
        if not destinataire:
            raise NotFoundError("Destinataire non trouvé")

        annonce_id = to_object_id(data["annonce"], "annonce")
        if not await self.db[ANNONCES].find_one({"_id": annonce_id, **NOT_DELETED}, {"_id": 1}):
            raise NotFoundError("Annonce non trouvée")

        message = self._new_message(
            user["_id"],
            destinataire_id,
            annonce_id,
            demande=to_object_id(data["demande"], "demande") if data.get("demande") else None,
            contenu=data.get("contenu"),
            type=data.get("type", MessageType.TEXTE.value),
            fichiers=data.get("fichiers", []),
            localisation=data.get("localisation"),
            reponseA=to_object_id(data["reponseA"], "reponseA") if data.get("reponseA") else None,
            mentions=[to_object_id(m, "mentions") for m in data.get("mentions", [])],
            priorite=data.get("priorite", Priorite.NORMALE.value),
        )
        result = await self.collection.insert_one(message)
        message["_id"] = result.inserted_id
        logger.info(f"✅ Message {result.inserted_id} envoyé dans {message['conversation']}")

        await self._relay(message)
        return message

    async def send_system_message(self, payload: BaseModel, expediteur, destinataire, annonce, demande=None) -> Dict[str, Any]:
        """Message système typé (union étiquetée) envoyé dans la conversation de la transaction"""
        system_message_adapter.validate_python(payload.model_dump())
        message = self._new_message(
            expediteur,
            destinataire,
            annonce,
            demande=demande,
            contenu=system_message_text(payload),
            type=MessageType.SYSTEME.value,
            messageSysteme=payload.model_dump(),
            priorite=Priorite.NORMALE.value,
        )
        result = await self.collection.insert_one(message)
        message["_id"] = result.inserted_id
        await self._relay(message)
        return message

    # ─────────────── lecture ───────────────

    async def get_conversations(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        uid = user["_id"]
        pipeline = [
            {"$match": {"$or": [{"expediteur": uid}, {"destinataire": uid}], **NOT_DELETED}},
            {"$sort": {"createdAt": -1}},
            {"$group": {
                "_id": "$conversation",
                "dernierMessage": {"$first": "$$ROOT"},
                "nonLus": {"$sum": {"$cond": [
                    {"$and": [{"$eq": ["$destinataire", uid]}, {"$eq": ["$lu", False]}]}, 1, 0,
                ]}},
                "total": {"$sum": 1},
            }},
            {"$sort": {"dernierMessage.createdAt": -1}},
        ]
        conversations = [row async for row in self.collection.aggregate(pipeline)]

        ids = set()
        for row in conversations:
            ids.update({row["dernierMessage"]["expediteur"], row["dernierMessage"]["destinataire"]})
        users = {}
        if ids:
            async for u in self.db[USERS].find({"_id": {"$in": list(ids)}}):
                users[u["_id"]] = user_summary(u)

        for row in conversations:
            last = row["dernierMessage"]
            autre = last["destinataire"] if last["expediteur"] == uid else last["expediteur"]
            row["conversation"] = row.pop("_id")
            row["interlocuteur"] = users.get(autre)
            row["annonce"] = last.get("annonce")
        return conversations

    async def _check_participant(self, conv_id: str, user: Dict[str, Any]) -> None:
        found = await self.collection.find_one({
            "conversation": conv_id,
            "$or": [{"expediteur": user["_id"]}, {"destinataire": user["_id"]}],
        }, {"_id": 1})
        if not found:
            raise NotFoundError("Conversation non trouvée")

    async def get_conversation(self, conv_id: str, user: Dict[str, Any], page: int = 1, limit: int = 50) -> Tuple[List[Dict[str, Any]], int]:
        """Messages d'une conversation (du plus récent au plus ancien) ; marque les messages reçus comme lus"""
        await self._check_participant(conv_id, user)
        query = {"conversation": conv_id, **NOT_DELETED}
        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
        messages = [m async for m in cursor]
        await self.marquer_conversation_lue(conv_id, user)
        return messages, total

    # ─────────────── accusés de lecture ───────────────

    async def marquer_lu(self, message_id, user: Dict[str, Any]) -> Dict[str, Any]:
        message = await self.get_or_404(message_id)
        if message["destinataire"] != user["_id"]:
            raise PermissionDeniedError("Seul le destinataire peut marquer ce message comme lu")
        if message.get("lu"):
            return message
        updated = await self.collection.find_one_and_update(
            {"_id": message["_id"]},
            {"$set": {"lu": True, "dateLecture": utcnow(), "statut": MessageStatut.LU.value}},
            return_document=ReturnDocument.AFTER,
        )
        await self.relay.send_to_user(message["expediteur"], "message-lu", {"messageId": message["_id"]})
        return updated

    async def marquer_conversation_lue(self, conv_id: str, user: Dict[str, Any]) -> int:
        """Marque en une fois tous les messages non lus adressés à l'utilisateur"""
        result = await self.collection.update_many(
            {"conversation": conv_id, "destinataire": user["_id"], "lu": False, **NOT_DELETED},
            {"$set": {"lu": True, "dateLecture": utcnow(), "statut": MessageStatut.LU.value}},
        )
        return result.modified_count

    async def compter_non_lus(self, user: Dict[str, Any]) -> int:
        return await self.collection.count_documents({"destinataire": user["_id"], "lu": False, **NOT_DELETED})

    # ─────────────── réactions ───────────────

    def _check_can_react(self, message: Dict[str, Any], user: Dict[str, Any]) -> None:
        if user["_id"] not in (message["expediteur"], message["destinataire"]):
            raise PermissionDeniedError("Vous ne participez pas à cette conversation")

    async def ajouter_reaction(self, message_id, user: Dict[str, Any], emoji: str) -> Dict[str, Any]:
        """Une réaction par utilisateur : remplace la précédente au lieu de s'ajouter"""
        message = await self.get_or_404(message_id)
        self._check_can_react(message, user)
        now = utcnow()

        result = await self.collection.update_one(
            {"_id": message["_id"], "reactions.utilisateur": user["_id"]},
            {"$set": {"reactions.$.emoji": emoji, "reactions.$.date": now}},
        )
        if result.matched_count == 0:
            await self.collection.update_one(
                {"_id": message["_id"], "reactions.utilisateur": {"$ne": user["_id"]}},
                {"$push": {"reactions": {"utilisateur": user["_id"], "emoji": emoji, "date": now}}},
            )
        return await self.collection.find_one({"_id": message["_id"]})

    async def retirer_reaction(self, message_id, user: Dict[str, Any]) -> Dict[str, Any]:
        message = await self.get_or_404(message_id)
        self._check_can_react(message, user)
        return await self.collection.find_one_and_update(
            {"_id": message["_id"]},
            {"$pull": {"reactions": {"utilisateur": user["_id"]}}},
            return_document=ReturnDocument.AFTER,
        )

    # ─────────────── suppression / recherche / stats ───────────────

    async def supprimer_message(self, message_id, user: Dict[str, Any]) -> None:
        message = await self.get_or_404(message_id)
        if message["expediteur"] != user["_id"]:
            raise PermissionDeniedError("Seul l'expéditeur peut supprimer ce message")
        await self.collection.update_one(
            {"_id": message["_id"]},
            {"$set": {"supprime": True, "dateSuppression": utcnow(), "supprimePar": user["_id"]}},
        )
        logger.info(f"✅ Message {message['_id']} supprimé par {user['_id']}")

    async def rechercher(self, user: Dict[str, Any], terme: str, page: int = 1, limit: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        query = {
            "$or": [{"expediteur": user["_id"]}, {"destinataire": user["_id"]}],
            "contenu": {"$regex": re.escape(terme), "$options": "i"},
            **NOT_DELETED,
        }
        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
        return [m async for m in cursor], total

    async def statistiques(self, user: Dict[str, Any]) -> Dict[str, Any]:
        uid = user["_id"]
        envoyes = await self.collection.count_documents({"expediteur": uid, **NOT_DELETED})
        recus = await self.collection.count_documents({"destinataire": uid, **NOT_DELETED})
        conversations = await self.collection.distinct(
            "conversation", {"$or": [{"expediteur": uid}, {"destinataire": uid}], **NOT_DELETED}
        )
        return {
            "messagesEnvoyes": envoyes,
            "messagesRecus": recus,
            "nonLus": await self.compter_non_lus(user),
            "conversations": len(conversations),
        }
