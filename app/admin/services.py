import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument

from app.db.mongo import ANNONCES, DEMANDES, EVALUATIONS, MESSAGES, USERS
from app.demandes.models import DemandeStatut
from app.messages.realtime import manager
from app.users.models import ModerationAction, UserRole, public_user, user_summary
from app.utils.email import notify_user
from app.utils.errors import BusinessRuleError, NotFoundError, PermissionDeniedError
from app.utils.mongodb_utils import NOT_DELETED, to_object_id, utcnow

logger = logging.getLogger(__name__)

MOIS_HISTORIQUE = 12


def debut_du_jour(now=None):
    now = now or utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def debut_fenetre_mensuelle(now=None, mois: int = MOIS_HISTORIQUE):
    """Premier jour du mois situé `mois - 1` mois avant le mois courant"""
    now = now or utcnow()
    annee, mois_courant = now.year, now.month - (mois - 1)
    while mois_courant <= 0:
        mois_courant += 12
        annee -= 1
    return now.replace(year=annee, month=mois_courant, day=1, hour=0, minute=0, second=0, microsecond=0)


class AdminService:
    def __init__(self, db):
        self.db = db
        self.users = db[USERS]

    # ─────────────── tableau de bord ───────────────

    async def _group_count(self, collection: str, field: str, match: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        async for row in self.db[collection].aggregate([
            {"$match": {**(match or {}), **NOT_DELETED}},
            {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        ]):
            counts[row["_id"]] = row["count"]
        return counts

    async def _croissance_utilisateurs(self) -> List[Dict[str, Any]]:
        rows = []
        async for row in self.users.aggregate([
            {"$match": {"createdAt": {"$gte": debut_fenetre_mensuelle()}, **NOT_DELETED}},
            {"$group": {
                "_id": {"annee": {"$year": "$createdAt"}, "mois": {"$month": "$createdAt"}},
                "count": {"$sum": 1},
            }},
            {"$sort": {"_id.annee": 1, "_id.mois": 1}},
        ]):
            rows.append({**row["_id"], "count": row["count"]})
        return rows

    async def _revenus_mensuels(self) -> List[Dict[str, Any]]:
        rows = []
        async for row in self.db[DEMANDES].aggregate([
            {"$match": {
                "statut": DemandeStatut.LIVREE.value,
                "dates.dateLivraisonReelle": {"$gte": debut_fenetre_mensuelle()},
                **NOT_DELETED,
            }},
            {"$group": {
                "_id": {"annee": {"$year": "$dates.dateLivraisonReelle"}, "mois": {"$month": "$dates.dateLivraisonReelle"}},
                "revenus": {"$sum": "$tarification.montantAccepte"},
                "livraisons": {"$sum": 1},
            }},
            {"$sort": {"_id.annee": 1, "_id.mois": 1}},
        ]):
            rows.append({**row["_id"], "revenus": row["revenus"], "livraisons": row["livraisons"]})
        return rows

    async def _recents(self, collection: str, limit: int = 5) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(dict(NOT_DELETED)).sort("createdAt", DESCENDING).limit(limit)
        return [doc async for doc in cursor]

    async def dashboard(self) -> Dict[str, Any]:
        recent_users = await self._recents(USERS)
        return {
            "totaux": {
                "utilisateurs": await self.users.count_documents(dict(NOT_DELETED)),
                "annonces": await self.db[ANNONCES].count_documents(dict(NOT_DELETED)),
                "demandes": await self.db[DEMANDES].count_documents(dict(NOT_DELETED)),
                "evaluations": await self.db[EVALUATIONS].count_documents(dict(NOT_DELETED)),
                "messages": await self.db[MESSAGES].count_documents(dict(NOT_DELETED)),
            },
            "utilisateursParRole": await self._group_count(USERS, "role"),
            "utilisateursParStatut": await self._group_count(USERS, "statut"),
            "annoncesParStatut": await self._group_count(ANNONCES, "statut"),
            "demandesParStatut": await self._group_count(DEMANDES, "statut"),
            "croissanceUtilisateurs": await self._croissance_utilisateurs(),
            "revenusMensuels": await self._revenus_mensuels(),
            "activiteRecente": {
                "utilisateurs": [user_summary(u) for u in recent_users],
                "annonces": await self._recents(ANNONCES),
                "demandes": await self._recents(DEMANDES),
            },
        }

    async def metriques(self) -> Dict[str, Any]:
        """Compteurs « temps réel » du jour"""
        aujourdhui = {"createdAt": {"$gte": debut_du_jour()}, **NOT_DELETED}
        return {
            "nouveauxUtilisateurs": await self.users.count_documents(aujourdhui),
            "nouvellesAnnonces": await self.db[ANNONCES].count_documents(aujourdhui),
            "nouvellesDemandes": await self.db[DEMANDES].count_documents(aujourdhui),
            "litigesOuverts": await self.db[DEMANDES].count_documents(
                {"litige.signale": True, "litige.resolu": {"$ne": True}, **NOT_DELETED}
            ),
            "evaluationsAModerer": await self.db[EVALUATIONS].count_documents(
                {"signalement.signale": True, "signalement.traite": {"$ne": True}, **NOT_DELETED}
            ),
            "utilisateursConnectes": len(manager.active_user_ids()),
            "timestamp": utcnow(),
        }

    # ─────────────── utilisateurs ───────────────

    async def get_user_or_404(self, user_id) -> Dict[str, Any]:
        user = await self.users.find_one({"_id": to_object_id(user_id, "userId"), **NOT_DELETED})
        if not user:
            raise NotFoundError("Utilisateur non trouvé")
        return user

    async def list_utilisateurs(
        self, role: Optional[str] = None, statut: Optional[str] = None, q: Optional[str] = None,
        page: int = 1, limit: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = dict(NOT_DELETED)
        if role:
            query["role"] = role
        if statut:
            query["statut"] = statut
        if q:
            pattern = {"$regex": re.escape(q), "$options": "i"}
            query["$or"] = [{"nom": pattern}, {"prenom": pattern}, {"email": pattern}]
        total = await self.users.count_documents(query)
        cursor = self.users.find(query).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit)
        return [public_user(u, include_private=True) async for u in cursor], total

    async def changer_statut_utilisateur(self, user_id, statut: str, raison: Optional[str], admin: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.get_user_or_404(user_id)
        if user["role"] == UserRole.ADMIN.value:
            raise PermissionDeniedError("Impossible de modifier le statut d'un administrateur")
        if user["statut"] == statut:
            raise BusinessRuleError(f"L'utilisateur a déjà le statut {statut}")

        entry = {
            "action": ModerationAction.CHANGEMENT_STATUT.value,
            "ancienStatut": user["statut"],
            "nouveauStatut": statut,
            "raison": raison,
            "admin": admin["_id"],
            "date": utcnow(),
        }
        updated = await self.users.find_one_and_update(
            {"_id": user["_id"], "statut": user["statut"]},
            {"$set": {"statut": statut, "updatedAt": utcnow()}, "$push": {"moderationHistorique": entry}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise BusinessRuleError("Le statut de cet utilisateur a été modifié entre-temps, veuillez réessayer")

        logger.info(f"✅ Statut utilisateur {user['_id']} : {user['statut']} -> {statut} (admin {admin['_id']})")
        await notify_user(updated, "statut_compte", {"statut": statut, "raison": raison or ""})
        return public_user(updated, include_private=True)

    async def gerer_badge(self, user_id, action: str, badge: str, admin: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.get_user_or_404(user_id)
        now = utcnow()
        if action == "ajouter":
            updated = await self.users.find_one_and_update(
                {"_id": user["_id"], "badges.type": {"$ne": badge}},
                {
                    "$push": {
                        "badges": {"type": badge, "dateObtention": now},
                        "moderationHistorique": {
                            "action": ModerationAction.AJOUT_BADGE.value, "badge": badge, "admin": admin["_id"], "date": now,
                        },
                    },
                },
                return_document=ReturnDocument.AFTER,
            )
            if not updated:
                raise BusinessRuleError("L'utilisateur possède déjà ce badge")
        else:
            updated = await self.users.find_one_and_update(
                {"_id": user["_id"], "badges.type": badge},
                {
                    "$pull": {"badges": {"type": badge}},
                    "$push": {"moderationHistorique": {
                        "action": ModerationAction.RETRAIT_BADGE.value, "badge": badge, "admin": admin["_id"], "date": now,
                    }},
                },
                return_document=ReturnDocument.AFTER,
            )
            if not updated:
                raise BusinessRuleError("L'utilisateur ne possède pas ce badge")
        logger.info(f"✅ Badge {badge} ({action}) pour {user['_id']} par admin {admin['_id']}")
        return public_user(updated, include_private=True)

    # ─────────────── annonces ───────────────

    async def list_annonces(self, statut: Optional[str] = None, q: Optional[str] = None, page: int = 1, limit: int = 20):
        query: Dict[str, Any] = dict(NOT_DELETED)
        if statut:
            query["statut"] = statut
        if q:
            pattern = {"$regex": re.escape(q), "$options": "i"}
            query["$or"] = [{"titre": pattern}, {"trajet.depart.ville": pattern}, {"trajet.destination.ville": pattern}]
        total = await self.db[ANNONCES].count_documents(query)
        cursor = self.db[ANNONCES].find(query).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit)
        return [a async for a in cursor], total

    async def changer_statut_annonce(self, annonce_id, statut: str, raison: Optional[str], admin: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        updated = await self.db[ANNONCES].find_one_and_update(
            {"_id": to_object_id(annonce_id, "annonceId"), **NOT_DELETED},
            {"$set": {
                "statut": statut,
                "moderationAdmin.verifie": True,
                "moderationAdmin.dateVerification": now,
                "moderationAdmin.verifiePar": admin["_id"],
                "moderationAdmin.raison": raison,
                "updatedAt": now,
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Annonce non trouvée")
        logger.info(f"✅ Annonce {updated['_id']} passée à {statut} par admin {admin['_id']}")
        return updated
