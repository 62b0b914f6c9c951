import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.annonces.models import (
    AnnonceStatut,
    accepte_type_marchandise,
    calculer_tarif,
    calculer_volume,
    peut_accepter_colis,
)
from app.annonces.services import AnnonceService
from app.db.mongo import ANNONCES, DEMANDES, USERS
from app.demandes.models import (
    ActionReponse,
    DemandeStatut,
    STATUTS_ACTIFS,
    STATUTS_NON_CLOS,
    generer_numero_suivi,
    history_entry,
    tracking_view,
    with_virtuals,
)
from app.demandes.state_machine import (
    CONDUCTEUR_TRANSITIONS,
    DECISION_STATUTS,
    STATUT_DATE_FIELDS,
    STATUTS_SUIVI_POSITION,
    TERMINAL_STATUTS,
    peut_etre_annulee,
    validate_transition,
)
from app.messages import models as system_messages
from app.messages.services import MessageService
from app.users.models import UserRole, user_summary
from app.utils.email import notify_user
from app.utils.errors import BusinessRuleError, NotFoundError, PermissionDeniedError
from app.utils.mongodb_utils import NOT_DELETED, to_object_id, utcnow

logger = logging.getLogger(__name__)

MAX_TRACKING_ATTEMPTS = 3

# Statut -> message système envoyé à l'expéditeur
STATUT_SYSTEM_MESSAGES = {
    DemandeStatut.ENLEVEE.value: system_messages.ColisEnleve,
    DemandeStatut.EN_TRANSIT.value: system_messages.ColisEnTransit,
    DemandeStatut.LIVREE.value: system_messages.ColisLivre,
}


class DemandeConflictError(BusinessRuleError):
    default_message = "La demande a été modifiée entre-temps, veuillez réessayer"


class DemandeService:
    def __init__(self, db, message_service: MessageService = None):
        self.db = db
        self.collection = db[DEMANDES]
        self.annonces = AnnonceService(db)
        self.messages = message_service or MessageService(db)

    # ─────────────── utilitaires ───────────────

    async def get_or_404(self, demande_id) -> Dict[str, Any]:
        demande = await self.collection.find_one({"_id": to_object_id(demande_id), **NOT_DELETED})
        if not demande:
            raise NotFoundError("Demande non trouvée")
        return demande

    @staticmethod
    def _is_party(demande: Dict[str, Any], user: Dict[str, Any]) -> bool:
        return user["_id"] in (demande["expediteur"], demande["conducteur"])

    async def _notify(self, user_id, template: str, data: Dict[str, Any]) -> None:
        user = await self.db[USERS].find_one({"_id": user_id})
        await notify_user(user, template, data)

    async def _system_message(self, payload, demande: Dict[str, Any], from_conducteur: bool = True) -> None:
        expediteur, destinataire = demande["conducteur"], demande["expediteur"]
        if not from_conducteur:
            expediteur, destinataire = destinataire, expediteur
        await self.messages.send_system_message(payload, expediteur, destinataire, demande["annonce"], demande["_id"])

    async def _write_status(
        self,
        demande: Dict[str, Any],
        statut: str,
        auteur=None,
        commentaire: Optional[str] = None,
        extra_set: Optional[Dict[str, Any]] = None,
        extra_filter: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Écriture de statut conditionnelle (compare-and-swap sur le statut courant).
        Ajoute toujours exactement une entrée d'historique.
        """
        now = utcnow()
        to_set = {"statut": statut, "updatedAt": now, **(extra_set or {})}
        if statut in STATUT_DATE_FIELDS:
            to_set[STATUT_DATE_FIELDS[statut]] = now

        updated = await self.collection.find_one_and_update(
            {"_id": demande["_id"], "statut": demande["statut"], **NOT_DELETED, **(extra_filter or {})},
            {"$set": to_set, "$push": {"historique": history_entry(statut, commentaire, auteur, now)}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            logger.warning(f"⚠️ Écriture concurrente détectée sur la demande {demande['_id']}")
            raise DemandeConflictError()
        logger.info(f"✅ Demande {demande['_id']} : {demande['statut']} -> {statut}")
        return updated

    # ─────────────── création ───────────────

    async def create_demande(self, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        if user.get("role") != UserRole.EXPEDITEUR.value:
            raise PermissionDeniedError("Seuls les expéditeurs peuvent envoyer des demandes")

        annonce = await self.db[ANNONCES].find_one({"_id": to_object_id(data["annonce"], "annonce"), **NOT_DELETED})
        if not annonce:
            raise NotFoundError("Annonce non trouvée")
        if annonce.get("statut") != AnnonceStatut.ACTIVE.value:
            raise BusinessRuleError("Cette annonce n'est plus disponible")
        if annonce["conducteur"] == user["_id"]:
            raise BusinessRuleError("Vous ne pouvez pas faire une demande sur votre propre annonce")

        existante = await self.collection.find_one({
            "annonce": annonce["_id"],
            "expediteur": user["_id"],
            "statut": {"$in": STATUTS_NON_CLOS},
            **NOT_DELETED,
        })
        if existante:
            raise BusinessRuleError("Vous avez déjà une demande en cours pour cette annonce")

        colis = data["colis"]
        if not peut_accepter_colis(annonce, colis["dimensions"], colis["poids"]):
            raise BusinessRuleError("Le colis dépasse la capacité de cette annonce")
        if not accepte_type_marchandise(annonce, colis.get("type")):
            raise BusinessRuleError("Ce type de marchandise n'est pas accepté par le conducteur")

        now = utcnow()
        colis["volume"] = calculer_volume(colis["dimensions"])
        tarification = {
            **data["tarification"],
            "montantAccepte": None,
            "tarifCalcule": calculer_tarif(annonce, colis["poids"], data["tarification"]["montantPropose"]),
            "paiementEffectue": False,
        }
        communications = []
        if data.get("message"):
            communications.append({"type": "message", "contenu": data["message"], "auteur": user["_id"], "date": now})

        document = {
            "annonce": annonce["_id"],
            "expediteur": user["_id"],
            "conducteur": annonce["conducteur"],
            "colis": colis,
            "adresses": data["adresses"],
            "tarification": tarification,
            "statut": DemandeStatut.EN_ATTENTE.value,
            "historique": [history_entry(DemandeStatut.EN_ATTENTE.value, "Demande créée", user["_id"], now)],
            "suivi": {"positionActuelle": None, "etapes": []},
            "dates": {
                "dateCreation": now,
                "dateReponse": None,
                "dateEnlevement": None,
                "dateLivraisonPrevue": data.get("dateLivraisonPrevue"),
                "dateLivraisonReelle": None,
            },
            "communications": communications,
            "evaluation": {"expediteurVersConducteur": None, "conducteurVersExpediteur": None},
            "litige": {"signale": False, "resolu": False},
            "supprime": False,
            "dateSuppression": None,
            "supprimePar": None,
            "createdAt": now,
            "updatedAt": now,
        }
        result = await self.collection.insert_one(document)
        document["_id"] = result.inserted_id
        logger.info(f"✅ Demande créée : id={result.inserted_id} sur annonce={annonce['_id']}")

        await self.annonces.register_demande(annonce["_id"])
        await self.db[USERS].update_one({"_id": user["_id"]}, {"$inc": {"statistiques.nombreDemandesEnvoyees": 1}})
        await self._system_message(
            system_messages.DemandeEnvoyee(demandeId=str(document["_id"])), document, from_conducteur=False
        )
        await self._notify(annonce["conducteur"], "nouvelle_demande", {"titre": annonce.get("titre")})
        return document

    # ─────────────── réponse du conducteur ───────────────

    async def repondre(self, demande_id, action: str, user: Dict[str, Any], message: Optional[str] = None, montant_accepte: Optional[float] = None) -> Dict[str, Any]:
        demande = await self.get_or_404(demande_id)
        if demande["conducteur"] != user["_id"]:
            raise PermissionDeniedError("Seul le conducteur peut répondre à cette demande")
        if demande["statut"] != DemandeStatut.EN_ATTENTE.value:
            raise BusinessRuleError("Cette demande a déjà reçu une réponse")

        annonce = await self.db[ANNONCES].find_one({"_id": demande["annonce"]}, {"titre": 1})
        titre = (annonce or {}).get("titre")

        if action == ActionReponse.REFUSER.value:
            validate_transition(demande["statut"], DemandeStatut.REFUSEE.value)
            updated = await self._write_status(demande, DemandeStatut.REFUSEE.value, user["_id"], message or "Demande refusée")
            await self._system_message(system_messages.DemandeRefusee(demandeId=str(demande["_id"]), motif=message), updated)
            await self._notify(demande["expediteur"], "demande_refusee", {"titre": titre})
            return updated

        validate_transition(demande["statut"], DemandeStatut.ACCEPTEE.value)
        montant = montant_accepte if montant_accepte is not None else demande["tarification"].get("montantPropose")

        updated = None
        for attempt in range(1, MAX_TRACKING_ATTEMPTS + 1):
            numero = generer_numero_suivi()
            try:
                updated = await self._write_status(
                    demande,
                    DemandeStatut.ACCEPTEE.value,
                    user["_id"],
                    message or "Demande acceptée",
                    extra_set={"suivi.numeroSuivi": numero, "tarification.montantAccepte": montant},
                    extra_filter={"suivi.numeroSuivi": {"$exists": False}},
                )
                break
            except DuplicateKeyError:
                logger.warning(f"⚠️ Collision de numéro de suivi {numero} (tentative {attempt})")
        if updated is None:
            raise BusinessRuleError("Impossible de générer un numéro de suivi unique, veuillez réessayer")

        await self.annonces.register_acceptation(demande["annonce"])
        await self.db[USERS].update_one({"_id": demande["expediteur"]}, {"$inc": {"statistiques.nombreDemandesAcceptees": 1}})
        await self._system_message(
            system_messages.DemandeAcceptee(demandeId=str(demande["_id"]), numeroSuivi=updated["suivi"]["numeroSuivi"]),
            updated,
        )
        await self._notify(demande["expediteur"], "demande_acceptee", {
            "titre": titre, "numeroSuivi": updated["suivi"]["numeroSuivi"],
        })
        return updated

    # ─────────────── progression ───────────────

    async def update_statut(self, demande_id, statut: str, user: Dict[str, Any], commentaire: Optional[str] = None) -> Dict[str, Any]:
        demande = await self.get_or_404(demande_id)
        if demande["conducteur"] != user["_id"]:
            raise PermissionDeniedError("Seul le conducteur peut mettre à jour le statut")

        validate_transition(demande["statut"], statut, CONDUCTEUR_TRANSITIONS)
        updated = await self._write_status(demande, statut, user["_id"], commentaire)

        numero = (updated.get("suivi") or {}).get("numeroSuivi")
        payload_cls = STATUT_SYSTEM_MESSAGES.get(statut)
        if payload_cls:
            await self._system_message(payload_cls(demandeId=str(demande["_id"]), numeroSuivi=numero), updated)
        if statut == DemandeStatut.LIVREE.value:
            await self._system_message(system_messages.EvaluationDemandee(demandeId=str(demande["_id"])), updated)
        await self._notify(demande["expediteur"], "statut_demande", {"numeroSuivi": numero, "statut": statut})
        return updated

    async def annuler(self, demande_id, motif: str, user: Dict[str, Any]) -> Dict[str, Any]:
        demande = await self.get_or_404(demande_id)
        if demande["expediteur"] != user["_id"]:
            raise PermissionDeniedError("Seul l'expéditeur peut annuler cette demande")
        if not peut_etre_annulee(demande["statut"]):
            raise BusinessRuleError("Cette demande ne peut plus être annulée")

        updated = await self._write_status(
            demande,
            DemandeStatut.ANNULEE.value,
            user["_id"],
            motif,
            extra_set={"annulation": {"motif": motif, "date": utcnow(), "par": user["_id"]}},
        )
        await self._notify(demande["conducteur"], "statut_demande", {
            "numeroSuivi": (demande.get("suivi") or {}).get("numeroSuivi") or str(demande["_id"]),
            "statut": DemandeStatut.ANNULEE.value,
        })
        return updated

    # ─────────────── litiges ───────────────

    async def signaler_litige(self, demande_id, motif: str, user: Dict[str, Any]) -> Dict[str, Any]:
        """Un seul litige par demande : le second signalement échoue"""
        demande = await self.get_or_404(demande_id)
        if not self._is_party(demande, user):
            raise PermissionDeniedError("Seules les parties de la transaction peuvent signaler un litige")
        if (demande.get("litige") or {}).get("signale"):
            raise BusinessRuleError("Un litige a déjà été signalé pour cette demande")

        validate_transition(demande["statut"], DemandeStatut.LITIGE.value)
        now = utcnow()
        updated = await self._write_status(
            demande,
            DemandeStatut.LITIGE.value,
            user["_id"],
            motif,
            extra_set={"litige": {
                "signale": True,
                "dateSignalement": now,
                "motif": motif,
                "signalePar": user["_id"],
                "statutAvantLitige": demande["statut"],
                "resolu": False,
            }},
            extra_filter={"litige.signale": {"$ne": True}},
        )
        await self._system_message(
            system_messages.LitigeSignale(demandeId=str(demande["_id"]), motif=motif),
            updated,
            from_conducteur=user["_id"] == demande["conducteur"],
        )
        autre = demande["expediteur"] if user["_id"] == demande["conducteur"] else demande["conducteur"]
        await self._notify(autre, "litige_signale", {"demandeId": str(demande["_id"]), "motif": motif})
        return updated

    async def resoudre_litige(self, demande_id, resolution: str, decision: str, admin: Dict[str, Any]) -> Dict[str, Any]:
        if admin.get("role") != UserRole.ADMIN.value:
            raise PermissionDeniedError("Seul un administrateur peut résoudre un litige")

        demande = await self.get_or_404(demande_id)
        litige = demande.get("litige") or {}
        if not litige.get("signale"):
            raise BusinessRuleError("Aucun litige signalé pour cette demande")
        if litige.get("resolu"):
            raise BusinessRuleError("Ce litige a déjà été résolu")

        now = utcnow()
        litige_set = {
            "litige.resolu": True,
            "litige.dateResolution": now,
            "litige.resolution": resolution,
            "litige.decision": decision,
            "litige.resoluPar": admin["_id"],
        }
        guard = {"litige.signale": True, "litige.resolu": {"$ne": True}}
        statut_final = DECISION_STATUTS.get(decision)

        try:
            if statut_final and demande["statut"] == DemandeStatut.LITIGE.value:
                validate_transition(demande["statut"], statut_final)
                updated = await self._write_status(
                    demande, statut_final, admin["_id"], f"Litige résolu : {resolution}",
                    extra_set=litige_set, extra_filter=guard,
                )
            else:
                updated = await self.collection.find_one_and_update(
                    {"_id": demande["_id"], **guard},
                    {"$set": {**litige_set, "updatedAt": now}},
                    return_document=ReturnDocument.AFTER,
                )
                if not updated:
                    raise DemandeConflictError("Ce litige a déjà été résolu")
        except DemandeConflictError:
            raise BusinessRuleError("Ce litige a déjà été résolu")

        logger.info(f"✅ Litige résolu sur demande {demande['_id']} ({decision}) par admin {admin['_id']}")
        for partie in (demande["expediteur"], demande["conducteur"]):
            await self._notify(partie, "litige_resolu", {"demandeId": str(demande["_id"]), "resolution": resolution})
        return updated

    # ─────────────── suivi ───────────────

    async def update_position(self, demande_id, latitude: float, longitude: float, adresse: Optional[str], user: Dict[str, Any]) -> Dict[str, Any]:
        demande = await self.get_or_404(demande_id)
        if demande["conducteur"] != user["_id"]:
            raise PermissionDeniedError("Seul le conducteur peut mettre à jour la position")
        if demande["statut"] not in STATUTS_SUIVI_POSITION:
            raise BusinessRuleError("La position ne peut être mise à jour que pour un colis enlevé ou en transit")

        position = {"latitude": latitude, "longitude": longitude, "adresse": adresse, "dateMAJ": utcnow()}
        updated = await self.collection.find_one_and_update(
            {"_id": demande["_id"], "statut": {"$in": STATUTS_SUIVI_POSITION}},
            {"$set": {"suivi.positionActuelle": position, "updatedAt": position["dateMAJ"]}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise DemandeConflictError()
        await self.messages.relay.send_to_user(demande["expediteur"], "notification", {
            "type": "position", "demandeId": demande["_id"], "position": position,
        })
        return updated

    async def add_etape(self, demande_id, lieu: str, statut: str, commentaire: Optional[str], user: Dict[str, Any]) -> Dict[str, Any]:
        """Ajoute un point de passage ; la liste n'est jamais réduite"""
        demande = await self.get_or_404(demande_id)
        if demande["conducteur"] != user["_id"] and user.get("role") != UserRole.ADMIN.value:
            raise PermissionDeniedError("Seul le conducteur peut ajouter une étape de suivi")
        if demande["statut"] not in STATUTS_ACTIFS:
            raise BusinessRuleError("Les étapes de suivi ne peuvent être ajoutées que pendant le transport")

        etape = {"lieu": lieu, "date": utcnow(), "statut": statut, "commentaire": commentaire}
        return await self.collection.find_one_and_update(
            {"_id": demande["_id"]},
            {"$push": {"suivi.etapes": etape}, "$set": {"updatedAt": etape["date"]}},
            return_document=ReturnDocument.AFTER,
        )

    async def add_communication(self, demande_id, type_: str, contenu: str, user: Dict[str, Any]) -> Dict[str, Any]:
        demande = await self.get_or_404(demande_id)
        if not self._is_party(demande, user):
            raise PermissionDeniedError("Accès non autorisé à cette demande")
        communication = {"type": type_, "contenu": contenu, "auteur": user["_id"], "date": utcnow()}
        await self.collection.update_one({"_id": demande["_id"]}, {"$push": {"communications": communication}})
        return communication

    async def suivre(self, numero_suivi: str) -> Dict[str, Any]:
        """Suivi public par numéro : aucune authentification, vue réduite"""
        demande = await self.collection.find_one({"suivi.numeroSuivi": numero_suivi.upper(), **NOT_DELETED})
        if not demande:
            raise NotFoundError("Numéro de suivi introuvable")
        annonce = await self.db[ANNONCES].find_one({"_id": demande["annonce"]}, {"trajet": 1})
        return tracking_view(demande, annonce)

    # ─────────────── évaluations ───────────────

    async def link_evaluation(self, demande_id, direction: str, evaluation_id) -> bool:
        """Lien unique Demande -> Evaluation pour une direction donnée"""
        field = f"evaluation.{direction}"
        result = await self.collection.update_one(
            {"_id": demande_id, field: None},
            {"$set": {field: evaluation_id, "updatedAt": utcnow()}},
        )
        return result.modified_count == 1

    # ─────────────── lecture ───────────────

    async def _populate(self, demandes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        user_ids = set()
        annonce_ids = set()
        for d in demandes:
            user_ids.update({d["expediteur"], d["conducteur"]})
            annonce_ids.add(d["annonce"])
        users = {}
        if user_ids:
            async for u in self.db[USERS].find({"_id": {"$in": list(user_ids)}}):
                users[u["_id"]] = user_summary(u)
        annonces = {}
        if annonce_ids:
            async for a in self.db[ANNONCES].find({"_id": {"$in": list(annonce_ids)}}, {"titre": 1, "trajet": 1, "planning": 1, "statut": 1}):
                annonces[a["_id"]] = a
        for d in demandes:
            d["expediteurInfo"] = users.get(d["expediteur"])
            d["conducteurInfo"] = users.get(d["conducteur"])
            d["annonceInfo"] = annonces.get(d["annonce"])
            with_virtuals(d)
        return demandes

    async def get_demande(self, demande_id, user: Dict[str, Any]) -> Dict[str, Any]:
        demande = await self.get_or_404(demande_id)
        if not self._is_party(demande, user) and user.get("role") != UserRole.ADMIN.value:
            raise PermissionDeniedError("Accès non autorisé à cette demande")
        return (await self._populate([demande]))[0]

    async def _list(self, query: Dict[str, Any], page: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        query = {**query, **NOT_DELETED}
        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
        return await self._populate([d async for d in cursor]), total

    async def list_mes_demandes(self, user: Dict[str, Any], statut: Optional[str] = None, page: int = 1, limit: int = 10):
        query: Dict[str, Any] = {"expediteur": user["_id"]}
        if statut:
            query["statut"] = statut
        return await self._list(query, page, limit)

    async def list_demandes_recues(self, user: Dict[str, Any], statut: Optional[str] = None, annonce: Optional[str] = None, page: int = 1, limit: int = 10):
        query: Dict[str, Any] = {"conducteur": user["_id"]}
        if statut:
            query["statut"] = statut
        if annonce:
            query["annonce"] = to_object_id(annonce, "annonce")
        return await self._list(query, page, limit)

    async def list_all(self, statut: Optional[str] = None, litige: Optional[bool] = None, resolu: Optional[bool] = None, page: int = 1, limit: int = 20):
        query: Dict[str, Any] = {}
        if statut:
            query["statut"] = statut
        if litige is not None:
            query["litige.signale"] = litige
        if resolu is not None:
            query["litige.resolu"] = resolu
        return await self._list(query, page, limit)

    async def statistiques(self) -> Dict[str, Any]:
        par_statut = {}
        async for row in self.collection.aggregate([
            {"$match": NOT_DELETED},
            {"$group": {"_id": "$statut", "count": {"$sum": 1}}},
        ]):
            par_statut[row["_id"]] = row["count"]

        chiffre_affaires = 0
        async for row in self.collection.aggregate([
            {"$match": {"statut": DemandeStatut.LIVREE.value, **NOT_DELETED}},
            {"$group": {"_id": None, "total": {"$sum": "$tarification.montantAccepte"}}},
        ]):
            chiffre_affaires = row["total"]

        en_retard = await self.collection.count_documents({
            "dates.dateLivraisonPrevue": {"$lt": utcnow()},
            "statut": {"$nin": TERMINAL_STATUTS},
            **NOT_DELETED,
        })
        return {
            "total": sum(par_statut.values()),
            "parStatut": par_statut,
            "chiffreAffaires": chiffre_affaires,
            "enRetard": en_retard,
            "litigesOuverts": await self.collection.count_documents(
                {"litige.signale": True, "litige.resolu": {"$ne": True}, **NOT_DELETED}
            ),
        }
