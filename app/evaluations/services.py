import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.db.mongo import DEMANDES, EVALUATIONS, USERS
from app.demandes.models import DemandeStatut
from app.demandes.services import DemandeService
from app.evaluations.models import (
    ActionModeration,
    CRITERES_COMMUNS,
    CRITERE_SPECIFIQUE,
    DEMANDE_SLOTS,
    DecisionSignalement,
    autre_partie,
    calculer_note,
    criteres_manquants,
    criteres_requis,
    est_visible,
    moyenne_notes,
    type_pour_evaluateur,
)
from app.users.models import UserRole, user_summary
from app.utils.errors import BusinessRuleError, NotFoundError, PermissionDeniedError, ValidationAppError
from app.utils.mongodb_utils import NOT_DELETED, to_object_id, utcnow

logger = logging.getLogger(__name__)

APPROUVEE = {"moderationAdmin.approuvee": True}


class EvaluationService:
    def __init__(self, db):
        self.db = db
        self.collection = db[EVALUATIONS]

    async def get_or_404(self, evaluation_id) -> Dict[str, Any]:
        evaluation = await self.collection.find_one({"_id": to_object_id(evaluation_id), **NOT_DELETED})
        if not evaluation:
            raise NotFoundError("Évaluation non trouvée")
        return evaluation

    # ─────────────── agrégat utilisateur ───────────────

    async def recalculer_note_utilisateur(self, user_id) -> Dict[str, Any]:
        """Recalcule noteMoyenne / nombreEvaluations à partir des évaluations approuvées"""
        notes = [
            doc["note"] async for doc in self.collection.find(
                {"evalue": user_id, **APPROUVEE, **NOT_DELETED}, {"note": 1}
            )
        ]
        stats = {"noteMoyenne": moyenne_notes(notes), "nombreEvaluations": len(notes)}
        await self.db[USERS].update_one(
            {"_id": user_id},
            {"$set": {
                "statistiques.noteMoyenne": stats["noteMoyenne"],
                "statistiques.nombreEvaluations": stats["nombreEvaluations"],
            }},
        )
        logger.info(f"✅ Note recalculée pour {user_id} : {stats['noteMoyenne']} ({stats['nombreEvaluations']} avis)")
        return stats

    # ─────────────── création ───────────────

    async def peut_evaluer(self, demande_id, user: Dict[str, Any]) -> Dict[str, Any]:
        demande = await self.db[DEMANDES].find_one({"_id": to_object_id(demande_id, "demande"), **NOT_DELETED})
        if not demande:
            raise NotFoundError("Demande non trouvée")
        type_evaluation = type_pour_evaluateur(demande, user["_id"])
        if not type_evaluation:
            raise PermissionDeniedError("Vous n'êtes pas autorisé à évaluer cette transaction")

        result = {
            "peutEvaluer": False,
            "typeEvaluation": type_evaluation,
            "evalue": autre_partie(demande, user["_id"]),
            "criteresRequis": criteres_requis(type_evaluation),
            "raison": None,
        }
        if demande["statut"] != DemandeStatut.LIVREE.value:
            result["raison"] = "La demande doit être livrée pour être évaluée"
        elif await self.collection.find_one({"evaluateur": user["_id"], "demande": demande["_id"]}, {"_id": 1}):
            result["raison"] = "Vous avez déjà évalué cette transaction"
        else:
            result["peutEvaluer"] = True
        return result

    async def create_evaluation(self, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        demande = await self.db[DEMANDES].find_one({"_id": to_object_id(data["demande"], "demande"), **NOT_DELETED})
        if not demande:
            raise NotFoundError("Demande non trouvée")

        type_evaluation = type_pour_evaluateur(demande, user["_id"])
        if not type_evaluation:
            raise PermissionDeniedError("Vous n'êtes pas autorisé à évaluer cette transaction")
        if demande["statut"] != DemandeStatut.LIVREE.value:
            raise BusinessRuleError("La demande doit être livrée pour être évaluée")

        criteres = data["criteres"]
        manquants = criteres_manquants(type_evaluation, criteres)
        if manquants:
            raise ValidationAppError(
                "Critères d'évaluation manquants",
                errors=[{"champ": f"criteres.{c}", "message": "Critère requis"} for c in manquants],
            )
        criteres = {c: criteres[c] for c in criteres_requis(type_evaluation)}

        evalue = autre_partie(demande, user["_id"])
        if await self.collection.find_one({"evaluateur": user["_id"], "evalue": evalue, "demande": demande["_id"]}, {"_id": 1}):
            raise BusinessRuleError("Vous avez déjà évalué cette transaction")

        now = utcnow()
        document = {
            "demande": demande["_id"],
            "annonce": demande.get("annonce"),
            "evaluateur": user["_id"],
            "evalue": evalue,
            "typeEvaluation": type_evaluation,
            "criteres": criteres,
            "note": calculer_note(criteres),
            "commentaire": data["commentaire"],
            "recommande": data["recommande"],
            "avantages": data.get("avantages", []),
            "inconvenients": data.get("inconvenients", []),
            "reponse": None,
            "signalement": {"signale": False, "traite": False},
            "moderationAdmin": {"approuvee": True, "moderee": False},
            "statistiques": {"nombreVues": 0, "nombreLikes": 0, "nombreDislikes": 0, "utile": []},
            "supprime": False,
            "dateSuppression": None,
            "supprimePar": None,
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            result = await self.collection.insert_one(document)
        except DuplicateKeyError:
            # Contrainte d'unicité (evaluateur, evalue, demande) : tentative concurrente
            raise BusinessRuleError("Vous avez déjà évalué cette transaction")
        document["_id"] = result.inserted_id
        logger.info(f"✅ Évaluation {result.inserted_id} créée ({type_evaluation}) sur demande {demande['_id']}")

        await DemandeService(self.db).link_evaluation(demande["_id"], DEMANDE_SLOTS[type_evaluation], document["_id"])
        await self.recalculer_note_utilisateur(evalue)
        return document

    # ─────────────── lecture ───────────────

    async def _populate(self, evaluations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = {e["evaluateur"] for e in evaluations} | {e["evalue"] for e in evaluations}
        users = {}
        if ids:
            async for u in self.db[USERS].find({"_id": {"$in": list(ids)}}):
                users[u["_id"]] = user_summary(u)
        for e in evaluations:
            e["evaluateurInfo"] = users.get(e["evaluateur"])
            e["evalueInfo"] = users.get(e["evalue"])
        return evaluations

    async def _paginate(self, query: Dict[str, Any], page: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
        return await self._populate([e async for e in cursor]), total

    async def get_evaluations_utilisateur(
        self, user_id, viewer: Optional[Dict[str, Any]] = None, type_evaluation: Optional[str] = None,
        page: int = 1, limit: int = 10,
    ):
        """Évaluations reçues : les non approuvées ne sont visibles que des parties et des admins"""
        uid = to_object_id(user_id, "userId")
        query: Dict[str, Any] = {"evalue": uid, **NOT_DELETED}
        if type_evaluation:
            query["typeEvaluation"] = type_evaluation
        if not viewer:
            query.update(APPROUVEE)
        elif viewer.get("role") != UserRole.ADMIN.value:
            query["$or"] = [APPROUVEE, {"evaluateur": viewer["_id"]}, {"evalue": viewer["_id"]}]
        return await self._paginate(query, page, limit)

    async def get_evaluation(self, evaluation_id, viewer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        evaluation = await self.get_or_404(evaluation_id)
        if not est_visible(evaluation, viewer):
            raise NotFoundError("Évaluation non trouvée")
        evaluation = await self.collection.find_one_and_update(
            {"_id": evaluation["_id"]},
            {"$inc": {"statistiques.nombreVues": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return (await self._populate([evaluation]))[0]

    async def get_mes_evaluations(self, user: Dict[str, Any], sens: str = "recues", page: int = 1, limit: int = 10):
        field = "evaluateur" if sens == "donnees" else "evalue"
        return await self._paginate({field: user["_id"], **NOT_DELETED}, page, limit)

    # ─────────────── interactions ───────────────

    async def repondre(self, evaluation_id, commentaire: str, user: Dict[str, Any]) -> Dict[str, Any]:
        evaluation = await self.get_or_404(evaluation_id)
        if evaluation["evalue"] != user["_id"]:
            raise PermissionDeniedError("Seule la personne évaluée peut répondre")

        updated = await self.collection.find_one_and_update(
            {"_id": evaluation["_id"], "reponse": None},
            {"$set": {
                "reponse": {"commentaire": commentaire, "dateReponse": utcnow(), "auteur": user["_id"]},
                "updatedAt": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleError("Une réponse a déjà été donnée à cette évaluation")
        return updated

    async def marquer_utile(self, evaluation_id, user: Dict[str, Any]) -> Dict[str, Any]:
        evaluation = await self.get_or_404(evaluation_id)
        updated = await self.collection.find_one_and_update(
            {"_id": evaluation["_id"], "statistiques.utile": {"$ne": user["_id"]}},
            {"$addToSet": {"statistiques.utile": user["_id"]}, "$inc": {"statistiques.nombreLikes": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleError("Vous avez déjà marqué cette évaluation comme utile")
        return updated

    async def signaler(self, evaluation_id, motif: str, details: Optional[str], user: Dict[str, Any]) -> Dict[str, Any]:
        evaluation = await self.get_or_404(evaluation_id)
        if evaluation["evaluateur"] == user["_id"]:
            raise BusinessRuleError("Vous ne pouvez pas signaler votre propre évaluation")

        updated = await self.collection.find_one_and_update(
            {"_id": evaluation["_id"], "signalement.signale": {"$ne": True}},
            {"$set": {"signalement": {
                "signale": True,
                "motif": motif,
                "details": details,
                "dateSignalement": utcnow(),
                "signalePar": user["_id"],
                "traite": False,
            }}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleError("Cette évaluation a déjà été signalée")
        logger.info(f"⚠️ Évaluation {evaluation['_id']} signalée par {user['_id']} ({motif})")
        return updated

    # ─────────────── modération ───────────────

    async def moderer(
        self, evaluation_id, action: str, admin: Dict[str, Any],
        raison_rejet: Optional[str] = None, decision: Optional[str] = None,
    ) -> Dict[str, Any]:
        evaluation = await self.get_or_404(evaluation_id)
        now = utcnow()
        to_set: Dict[str, Any] = {
            "moderationAdmin.moderee": True,
            "moderationAdmin.dateModeration": now,
            "moderationAdmin.moderateur": admin["_id"],
            "updatedAt": now,
        }

        if action == ActionModeration.APPROUVER.value:
            to_set.update({"moderationAdmin.approuvee": True, "moderationAdmin.raisonRejet": None})
        elif action == ActionModeration.REJETER.value:
            to_set.update({"moderationAdmin.approuvee": False, "moderationAdmin.raisonRejet": raison_rejet})
        elif action == ActionModeration.TRAITER_SIGNALEMENT.value:
            if not (evaluation.get("signalement") or {}).get("signale"):
                raise BusinessRuleError("Aucun signalement à traiter pour cette évaluation")
            to_set.update({
                "signalement.traite": True,
                "signalement.dateTraitement": now,
                "signalement.decision": decision,
            })
            if decision == DecisionSignalement.SUPPRIMEE.value:
                to_set["moderationAdmin.approuvee"] = False
        else:
            raise ValidationAppError(f"Action de modération inconnue : {action}")

        updated = await self.collection.find_one_and_update(
            {"_id": evaluation["_id"]},
            {"$set": to_set},
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"✅ Évaluation {evaluation['_id']} modérée ({action}) par admin {admin['_id']}")
        await self.recalculer_note_utilisateur(evaluation["evalue"])
        return updated

    async def file_moderation(self, page: int = 1, limit: int = 20):
        query = {
            "$or": [
                {"signalement.signale": True, "signalement.traite": {"$ne": True}},
                {"moderationAdmin.approuvee": False, "moderationAdmin.moderee": {"$ne": True}},
            ],
            **NOT_DELETED,
        }
        return await self._paginate(query, page, limit)

    # ─────────────── modification / suppression ───────────────

    async def mettre_a_jour(self, evaluation_id, patch: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        evaluation = await self.get_or_404(evaluation_id)
        if evaluation["evaluateur"] != user["_id"]:
            raise PermissionDeniedError("Vous n'êtes pas autorisé à modifier cette évaluation")
        moderation = evaluation.get("moderationAdmin") or {}
        if moderation.get("moderee") and moderation.get("approuvee"):
            raise BusinessRuleError("Vous ne pouvez plus modifier une évaluation approuvée")

        to_set = {k: v for k, v in patch.items() if k != "criteres"}
        if patch.get("criteres"):
            manquants = criteres_manquants(evaluation["typeEvaluation"], patch["criteres"])
            if manquants:
                raise ValidationAppError(
                    "Critères d'évaluation manquants",
                    errors=[{"champ": f"criteres.{c}", "message": "Critère requis"} for c in manquants],
                )
            criteres = {c: patch["criteres"][c] for c in criteres_requis(evaluation["typeEvaluation"])}
            to_set["criteres"] = criteres
            to_set["note"] = calculer_note(criteres)
        to_set["updatedAt"] = utcnow()

        updated = await self.collection.find_one_and_update(
            {"_id": evaluation["_id"], "$or": [{"moderationAdmin.moderee": {"$ne": True}}, {"moderationAdmin.approuvee": False}]},
            {"$set": to_set},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleError("Vous ne pouvez plus modifier une évaluation approuvée")
        await self.recalculer_note_utilisateur(evaluation["evalue"])
        return updated

    async def supprimer(self, evaluation_id, user: Dict[str, Any]) -> None:
        evaluation = await self.get_or_404(evaluation_id)
        if evaluation["evaluateur"] != user["_id"] and user.get("role") != UserRole.ADMIN.value:
            raise PermissionDeniedError("Vous n'êtes pas autorisé à supprimer cette évaluation")
        await self.collection.update_one(
            {"_id": evaluation["_id"]},
            {"$set": {"supprime": True, "dateSuppression": utcnow(), "supprimePar": user["_id"]}},
        )
        logger.info(f"✅ Évaluation {evaluation['_id']} supprimée par {user['_id']}")
        await self.recalculer_note_utilisateur(evaluation["evalue"])

    # ─────────────── statistiques ───────────────

    async def resume_utilisateur(self, user_id) -> Dict[str, Any]:
        """Moyennes par critère, taux de recommandation et distribution des notes"""
        uid = to_object_id(user_id, "userId")
        evaluations = [e async for e in self.collection.find({"evalue": uid, **APPROUVEE, **NOT_DELETED})]
        total = len(evaluations)

        moyennes: Dict[str, Optional[float]] = {}
        for critere in CRITERES_COMMUNS + list(CRITERE_SPECIFIQUE.values()):
            valeurs = [e["criteres"][critere] for e in evaluations if (e.get("criteres") or {}).get(critere) is not None]
            moyennes[critere] = round(sum(valeurs) / len(valeurs), 2) if valeurs else None

        distribution = {str(etoile): 0 for etoile in range(1, 6)}
        for e in evaluations:
            etoile = min(5, max(1, int(e["note"])))
            distribution[str(etoile)] += 1

        recommandations = sum(1 for e in evaluations if e.get("recommande"))
        return {
            "total": total,
            "noteMoyenne": moyenne_notes(e["note"] for e in evaluations),
            "moyennesCriteres": moyennes,
            "tauxRecommandation": round(recommandations / total * 100, 2) if total else 0,
            "distribution": distribution,
        }

    async def statistiques_globales(self) -> Dict[str, Any]:
        par_type = {}
        async for row in self.collection.aggregate([
            {"$match": NOT_DELETED},
            {"$group": {"_id": "$typeEvaluation", "count": {"$sum": 1}, "moyenne": {"$avg": "$note"}}},
        ]):
            par_type[row["_id"]] = {"count": row["count"], "moyenne": round(row["moyenne"] or 0, 2)}

        return {
            "total": sum(v["count"] for v in par_type.values()),
            "parType": par_type,
            "signalees": await self.collection.count_documents({"signalement.signale": True, **NOT_DELETED}),
            "enAttenteModeration": await self.collection.count_documents({
                "signalement.signale": True, "signalement.traite": {"$ne": True}, **NOT_DELETED,
            }),
            "rejetees": await self.collection.count_documents({"moderationAdmin.approuvee": False, **NOT_DELETED}),
        }
