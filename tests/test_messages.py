"""
Messagerie : conversations, accusés de lecture, réactions, relais temps réel
"""
import pytest
from fastapi import WebSocketDisconnect

from app.annonces.services import AnnonceService
from app.auth.services import issue_tokens
from app.db.mongo import ANNONCES, MESSAGES
from app.messages.models import conversation_id
from app.messages.realtime import ConnectionManager
from app.messages.services import MessageService
from app.utils.errors import BusinessRuleError, NotFoundError, PermissionDeniedError
from app.utils.mongodb_utils import utcnow

from tests.factories import annonce_data, create_user


class FakeWebSocket:
    """Socket minimale : enregistre les trames envoyées"""

    def __init__(self):
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, payload):
        self.sent.append(payload)


async def setup_conversation(db, relay=None):
    conducteur = await create_user(db, "conducteur")
    expediteur = await create_user(db, "expediteur")
    annonce = await AnnonceService(db).create_annonce(annonce_data(), conducteur)
    service = MessageService(db, relay or ConnectionManager())
    return service, conducteur, expediteur, annonce


def texte(destinataire, annonce, contenu="Bonjour, le trajet est-il toujours disponible ?"):
    return {"destinataire": str(destinataire["_id"]), "annonce": str(annonce["_id"]), "contenu": contenu, "type": "texte"}


class TestEnvoi:

    @pytest.mark.asyncio
    async def test_send_message(self, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        message = await service.send_message(expediteur, texte(conducteur, annonce))
        assert message["conversation"] == conversation_id(expediteur["_id"], conducteur["_id"], annonce["_id"])
        assert message["statut"] == "envoye"
        assert message["lu"] is False

    @pytest.mark.asyncio
    async def test_cannot_message_self(self, db):
        service, conducteur, _, annonce = await setup_conversation(db)
        with pytest.raises(BusinessRuleError):
            await service.send_message(conducteur, texte(conducteur, annonce))

    @pytest.mark.asyncio
    async def test_both_directions_share_conversation(self, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        aller = await service.send_message(expediteur, texte(conducteur, annonce))
        retour = await service.send_message(conducteur, texte(expediteur, annonce, "Oui, il reste de la place"))
        assert aller["conversation"] == retour["conversation"]

        messages, total = await service.get_conversation(aller["conversation"], conducteur)
        assert total == 2

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_conversation(self, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        intrus = await create_user(db, "expediteur")
        message = await service.send_message(expediteur, texte(conducteur, annonce))
        with pytest.raises(NotFoundError):
            await service.get_conversation(message["conversation"], intrus)


class TestLecture:

    @pytest.mark.asyncio
    async def test_read_receipts(self, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        premier = await service.send_message(expediteur, texte(conducteur, annonce))
        await service.send_message(expediteur, texte(conducteur, annonce, "Je peux déposer le colis demain"))
        assert await service.compter_non_lus(conducteur) == 2

        with pytest.raises(PermissionDeniedError):
            await service.marquer_lu(premier["_id"], expediteur)

        lu = await service.marquer_lu(premier["_id"], conducteur)
        assert lu["lu"] is True
        assert lu["statut"] == "lu"
        assert lu["dateLecture"] is not None
        assert await service.compter_non_lus(conducteur) == 1

        assert await service.marquer_conversation_lue(premier["conversation"], conducteur) == 1
        assert await service.compter_non_lus(conducteur) == 0

    @pytest.mark.asyncio
    async def test_opening_conversation_marks_received_messages_read(self, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        message = await service.send_message(expediteur, texte(conducteur, annonce))
        await service.get_conversation(message["conversation"], expediteur)
        assert await service.compter_non_lus(conducteur) == 1
        await service.get_conversation(message["conversation"], conducteur)
        assert await service.compter_non_lus(conducteur) == 0


class TestReactions:

    @pytest.mark.asyncio
    async def test_one_reaction_per_user(self, db):
        """Une nouvelle réaction remplace la précédente"""
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        message = await service.send_message(expediteur, texte(conducteur, annonce))

        await service.ajouter_reaction(message["_id"], conducteur, "👍")
        updated = await service.ajouter_reaction(message["_id"], conducteur, "❤️")
        assert len(updated["reactions"]) == 1
        assert updated["reactions"][0]["emoji"] == "❤️"

        updated = await service.ajouter_reaction(message["_id"], expediteur, "😂")
        assert len(updated["reactions"]) == 2

        updated = await service.retirer_reaction(message["_id"], conducteur)
        assert [r["emoji"] for r in updated["reactions"]] == ["😂"]

    @pytest.mark.asyncio
    async def test_outsider_cannot_react(self, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        intrus = await create_user(db, "expediteur")
        message = await service.send_message(expediteur, texte(conducteur, annonce))
        with pytest.raises(PermissionDeniedError):
            await service.ajouter_reaction(message["_id"], intrus, "👍")


class TestSuppression:

    @pytest.mark.asyncio
    async def test_sender_only_and_tombstone(self, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        message = await service.send_message(expediteur, texte(conducteur, annonce))

        with pytest.raises(PermissionDeniedError):
            await service.supprimer_message(message["_id"], conducteur)

        await service.supprimer_message(message["_id"], expediteur)
        assert await service.compter_non_lus(conducteur) == 0
        doc = await db[MESSAGES].find_one({"_id": message["_id"]})
        assert doc["supprime"] is True
        assert doc["supprimePar"] == expediteur["_id"]


class TestRelais:

    @pytest.mark.asyncio
    async def test_room_broadcast_and_notification(self, db):
        relay = ConnectionManager()
        service, conducteur, expediteur, annonce = await setup_conversation(db, relay)
        socket_conducteur = FakeWebSocket()
        await relay.connect(socket_conducteur, str(conducteur["_id"]))
        relay.join(conversation_id(expediteur["_id"], conducteur["_id"], annonce["_id"]), socket_conducteur)

        await service.send_message(expediteur, texte(conducteur, annonce))

        events = [frame["type"] for frame in socket_conducteur.sent]
        assert events == ["receive-message", "notification"]
        assert socket_conducteur.sent[0]["data"]["contenu"].startswith("Bonjour")

    @pytest.mark.asyncio
    async def test_disconnect_purges_registry(self):
        relay = ConnectionManager()
        socket = FakeWebSocket()
        await relay.connect(socket, "user-1")
        relay.join("room-1", socket)
        assert relay.is_online("user-1")

        relay.disconnect(socket)
        assert not relay.is_online("user-1")
        assert relay.rooms == {}
        assert await relay.broadcast_to_room("room-1", "receive-message", {}) == 0


def ws_url(user):
    return f"/ws?token={issue_tokens(user)['token']}"


class TestWebSocket:

    def test_missing_token_closes_1008(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws"):
                pass
        assert exc.value.code == 1008

    def test_bad_token_closes_1008(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws?token=pas-un-jwt"):
                pass
        assert exc.value.code == 1008

    @pytest.mark.asyncio
    async def test_outsider_cannot_join_room(self, live_client, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        await service.send_message(expediteur, texte(conducteur, annonce))
        intrus = await create_user(db, "expediteur")
        conv = conversation_id(expediteur["_id"], conducteur["_id"], annonce["_id"])

        with live_client.websocket_connect(ws_url(intrus)) as socket:
            socket.send_json({"type": "join-room", "data": {"conversationId": conv}})
            frame = socket.receive_json()
        assert frame["type"] == "error"
        assert frame["data"]["message"] == "Conversation non trouvée"

    @pytest.mark.asyncio
    async def test_unknown_event_answers_error(self, live_client, db):
        user = await create_user(db, "expediteur")
        with live_client.websocket_connect(ws_url(user)) as socket:
            socket.send_json({"type": "typing", "data": {}})
            frame = socket.receive_json()
        assert frame["type"] == "error"

    @pytest.mark.asyncio
    async def test_send_message_relayed_to_other_participant(self, live_client, db):
        """send-message est persisté puis relayé en receive-message au participant présent dans la salle"""
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        await service.send_message(expediteur, texte(conducteur, annonce))
        conv = conversation_id(expediteur["_id"], conducteur["_id"], annonce["_id"])

        with live_client.websocket_connect(ws_url(conducteur)) as socket_conducteur:
            socket_conducteur.send_json({"type": "join-room", "data": {"conversationId": conv}})
            rejoint = socket_conducteur.receive_json()
            assert rejoint["type"] == "room-joined"
            assert rejoint["data"] == {"conversationId": conv}

            with live_client.websocket_connect(ws_url(expediteur)) as socket_expediteur:
                socket_expediteur.send_json({
                    "type": "send-message",
                    "data": texte(conducteur, annonce, contenu="Je peux déposer le colis demain matin"),
                })
                recu = socket_conducteur.receive_json()
                notification = socket_conducteur.receive_json()

        assert recu["type"] == "receive-message"
        assert recu["data"]["contenu"] == "Je peux déposer le colis demain matin"
        assert recu["data"]["expediteur"] == str(expediteur["_id"])
        assert recu["data"]["conversation"] == conv
        assert notification["type"] == "notification"
        assert notification["data"]["conversation"] == conv
        assert await db[MESSAGES].count_documents({"conversation": conv}) == 2

    @pytest.mark.asyncio
    async def test_message_to_deleted_annonce_refused(self, db):
        service, conducteur, expediteur, annonce = await setup_conversation(db)
        await db[ANNONCES].update_one(
            {"_id": annonce["_id"]},
            {"$set": {"supprime": True, "dateSuppression": utcnow(), "supprimePar": conducteur["_id"]}},
        )
        with pytest.raises(NotFoundError):
            await service.send_message(expediteur, texte(conducteur, annonce))
