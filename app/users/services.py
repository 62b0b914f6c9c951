import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument

from app.auth.password import verify_password
from app.db.mongo import ANNONCES, DEMANDES, MESSAGES, USERS
from app.demandes.models import STATUTS_ACTIFS, DemandeStatut
from app.users.models import UserRole, UserStatus, anonymized_fields, public_user
from app.utils.errors import AuthenticationError, BusinessRuleError, NotFoundError
from app.utils.mongodb_utils import NOT_DELETED, flatten_for_set, to_object_id, utcnow

logger = logging.getLogger(__name__)

# Nombre minimal d'évaluations pour apparaître dans le classement
TOP_MIN_EVALUATIONS = 3


class UserService:
    def __init__(self, db):
        self.db = db
        self.collection = db[USERS]

    async def get_or_404(self, user_id) -> Dict[str, Any]:
        user = await self.collection.find_one({"_id": to_object_id(user_id, "userId"), **NOT_DELETED})
        if not user:
            raise NotFoundError("Utilisateur non trouvé")
        return user

    async def _count_by_statut(self, collection: str, match: Dict[str, Any]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        async for row in self.db[collection].aggregate([
            {"$match": {**match, **NOT_DELETED}},
            {"$group": {"_id": "$statut", "count": {"$sum": 1}}},
        ]):
            counts[row["_id"]] = row["count"]
        return counts

    async def _montant_livre(self, match: Dict[str, Any]) -> float:
        total = 0
        async for row in self.db[DEMANDES].aggregate([
            {"$match": {**match, "statut": DemandeStatut.LIVREE.value, **NOT_DELETED}},
            {"$group": {"_id": None, "total": {"$sum": "$tarification.montantAccepte"}}},
        ]):
            total = row["total"] or 0
        return total

    # ─────────────── profil ───────────────

    async def get_profile(self, user_id, viewer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Profil public ; email/téléphone visibles seulement du propriétaire et des admins"""
        user = await self.get_or_404(user_id)
        include_private = bool(viewer) and (viewer["_id"] == user["_id"] or viewer.get("role") == UserRole.ADMIN.value)
        return public_user(user, include_private=include_private)

    async def update_profile(self, user: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        if not patch:
            raise BusinessRuleError("Aucune donnée à mettre à jour")
        to_set = flatten_for_set(patch)
        to_set["updatedAt"] = utcnow()
        updated = await self.collection.find_one_and_update(
            {"_id": user["_id"], **NOT_DELETED},
            {"$set": to_set},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Utilisateur non trouvé")
        logger.info(f"✅ Profil mis à jour : id={user['_id']}")
        return public_user(updated, include_private=True)

    # ─────────────── statistiques ───────────────

    async def statistiques(self, user_id) -> Dict[str, Any]:
        user = await self.get_or_404(user_id)
        stats = user.get("statistiques") or {}
        result: Dict[str, Any] = {
            "role": user["role"],
            "noteMoyenne": stats.get("noteMoyenne", 0),
            "nombreEvaluations": stats.get("nombreEvaluations", 0),
            "membreDepuis": user.get("createdAt"),
        }
        if user["role"] == UserRole.CONDUCTEUR.value:
            result["annonces"] = await self._count_by_statut(ANNONCES, {"conducteur": user["_id"]})
            result["demandesRecues"] = await self._count_by_statut(DEMANDES, {"conducteur": user["_id"]})
            result["revenus"] = await self._montant_livre({"conducteur": user["_id"]})
        elif user["role"] == UserRole.EXPEDITEUR.value:
            result["demandesEnvoyees"] = await self._count_by_statut(DEMANDES, {"expediteur": user["_id"]})
            result["depenses"] = await self._montant_livre({"expediteur": user["_id"]})
        result["livraisonsReussies"] = await self.db[DEMANDES].count_documents({
            "$or": [{"conducteur": user["_id"]}, {"expediteur": user["_id"]}],
            "statut": DemandeStatut.LIVREE.value,
            **NOT_DELETED,
        })
        return result

    async def dashboard(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Compteurs personnels de l'utilisateur connecté"""
        field = "conducteur" if user["role"] == UserRole.CONDUCTEUR.value else "expediteur"
        demandes = await self._count_by_statut(DEMANDES, {field: user["_id"]})
        data = {
            "statistiques": user.get("statistiques") or {},
            "demandes": demandes,
            "demandesActives": sum(demandes.get(s, 0) for s in STATUTS_ACTIFS),
            "messagesNonLus": await self.db[MESSAGES].count_documents(
                {"destinataire": user["_id"], "lu": False, **NOT_DELETED}
            ),
        }
        if user["role"] == UserRole.CONDUCTEUR.value:
            data["annonces"] = await self._count_by_statut(ANNONCES, {"conducteur": user["_id"]})
            data["demandesEnAttente"] = demandes.get(DemandeStatut.EN_ATTENTE.value, 0)
        return data

    # ─────────────── recherche ───────────────

    async def rechercher(
        self, q: Optional[str] = None, role: Optional[str] = None, ville: Optional[str] = None,
        note_min: Optional[float] = None, page: int = 1, limit: int = 10,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"statut": UserStatus.ACTIF.value, "role": {"$ne": UserRole.ADMIN.value}, **NOT_DELETED}
        if q:
            pattern = {"$regex": re.escape(q), "$options": "i"}
            query["$or"] = [{"nom": pattern}, {"prenom": pattern}]
        if role:
            query["role"] = role
        if ville:
            query["adresse.ville"] = {"$regex": re.escape(ville), "$options": "i"}
        if note_min is not None:
            query["statistiques.noteMoyenne"] = {"$gte": note_min}

        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort("statistiques.noteMoyenne", DESCENDING).skip((page - 1) * limit).limit(limit)
        return [public_user(u) async for u in cursor], total

    async def top(self, role: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {
            "statut": UserStatus.ACTIF.value,
            "statistiques.nombreEvaluations": {"$gte": TOP_MIN_EVALUATIONS},
            **NOT_DELETED,
        }
        if role:
            query["role"] = role
        cursor = self.collection.find(query).sort(
            [("statistiques.noteMoyenne", DESCENDING), ("statistiques.nombreEvaluations", DESCENDING)]
        ).limit(limit)
        return [public_user(u) async for u in cursor]

    # ─────────────── suppression du compte ───────────────

    async def supprimer_compte(self, user: Dict[str, Any], mot_de_passe: str) -> None:
        """Suppression logique + anonymisation ; refusée tant qu'une transaction est en cours"""
        if not verify_password(mot_de_passe, user.get("motDePasse")):
            raise AuthenticationError("Mot de passe incorrect")

        en_cours = await self.db[DEMANDES].count_documents({
            "$or": [{"expediteur": user["_id"]}, {"conducteur": user["_id"]}],
            "statut": {"$in": STATUTS_ACTIFS},
            **NOT_DELETED,
        })
        if en_cours > 0:
            raise BusinessRuleError("Impossible de supprimer votre compte avec des transactions en cours")

        now = utcnow()
        tombstone = {"supprime": True, "dateSuppression": now, "supprimePar": user["_id"]}
        await self.db[ANNONCES].update_many({"conducteur": user["_id"], **NOT_DELETED}, {"$set": tombstone})
        await self.db[DEMANDES].update_many(
            {"expediteur": user["_id"], "statut": DemandeStatut.EN_ATTENTE.value, **NOT_DELETED},
            {"$set": tombstone},
        )
        await self.collection.update_one(
            {"_id": user["_id"]},
            {"$set": {**anonymized_fields(user["_id"]), **tombstone, "updatedAt": now}},
        )
        logger.info(f"✅ Compte supprimé et anonymisé : id={user['_id']}")
