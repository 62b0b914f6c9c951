import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from app.annonces.models import (
    AnnonceStatut,
    apply_derived_fields,
    calculer_taux_acceptation,
)
from app.annonces.schemas import AnnonceFilters, ColisRecherche
from app.db.mongo import ANNONCES, DEMANDES, USERS
from app.demandes.models import STATUTS_ACTIFS
from app.users.models import UserRole, user_summary
from app.utils.errors import BusinessRuleError, NotFoundError, PermissionDeniedError
from app.utils.mongodb_utils import NOT_DELETED, to_object_id, utcnow

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "createdAt": "createdAt",
    "dateDepart": "planning.dateDepart",
    "prixParKg": "tarification.prixParKg",
    "prixFixe": "tarification.prixFixe",
    "nombreVues": "statistiques.nombreVues",
}


def parse_sort(sort: Optional[str]) -> List[Tuple[str, int]]:
    """'-createdAt' -> [('createdAt', DESCENDING)]"""
    sort = sort or "-createdAt"
    direction = DESCENDING if sort.startswith("-") else ASCENDING
    field = SORT_FIELDS.get(sort.lstrip("-"), "createdAt")
    return [(field, direction)]


def build_annonce_query(filters: AnnonceFilters) -> Dict[str, Any]:
    """Filtre conjonctif pour la recherche d'annonces (tombstones exclues)"""
    query: Dict[str, Any] = dict(NOT_DELETED)
    if filters.statut:
        query["statut"] = filters.statut
    if filters.villeDepart:
        query["trajet.depart.ville"] = {"$regex": re.escape(filters.villeDepart), "$options": "i"}
    if filters.villeDestination:
        query["trajet.destination.ville"] = {"$regex": re.escape(filters.villeDestination), "$options": "i"}
    if filters.dateMin or filters.dateMax:
        date_filter: Dict[str, Any] = {}
        if filters.dateMin:
            date_filter["$gte"] = filters.dateMin
        if filters.dateMax:
            date_filter["$lte"] = filters.dateMax
        query["planning.dateDepart"] = date_filter
    if filters.prixMin is not None or filters.prixMax is not None:
        price: Dict[str, Any] = {}
        if filters.prixMin is not None:
            price["$gte"] = filters.prixMin
        if filters.prixMax is not None:
            price["$lte"] = filters.prixMax
        query["$or"] = [
            {"tarification.prixParKg": price},
            {"tarification.prixFixe": price},
        ]
    if filters.typesMarchandise:
        query["typesMarchandise"] = {"$in": filters.typesMarchandise}
    if filters.conducteur:
        query["conducteur"] = to_object_id(filters.conducteur, "conducteur")
    return query


def capacity_query(colis: ColisRecherche) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if colis.poids is not None:
        query["capacite.poidsMax"] = {"$gte": colis.poids}
    for cle in ("longueur", "largeur", "hauteur"):
        valeur = getattr(colis, cle)
        if valeur is not None:
            query[f"capacite.dimensionsMax.{cle}"] = {"$gte": valeur}
    if colis.typeMarchandise:
        query["$and"] = [{"$or": [
            {"typesMarchandise": colis.typeMarchandise.value},
            {"typesMarchandise": {"$size": 0}},
        ]}]
    return query


class AnnonceService:
    def __init__(self, db):
        self.db = db
        self.collection = db[ANNONCES]

    # ─────────────── lecture ───────────────

    async def get_or_404(self, annonce_id) -> Dict[str, Any]:
        annonce = await self.collection.find_one({"_id": to_object_id(annonce_id), **NOT_DELETED})
        if not annonce:
            raise NotFoundError("Annonce non trouvée")
        return annonce

    async def _populate_conducteurs(self, annonces: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = list({a["conducteur"] for a in annonces if a.get("conducteur")})
        users = {}
        if ids:
            async for user in self.db[USERS].find({"_id": {"$in": ids}}):
                users[user["_id"]] = user_summary(user)
        for annonce in annonces:
            annonce["conducteurInfo"] = users.get(annonce.get("conducteur"))
        return annonces

    async def _paginate(self, query: Dict[str, Any], page: int, limit: int, sort: Optional[str]) -> Tuple[List[Dict[str, Any]], int]:
        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort(parse_sort(sort)).skip((page - 1) * limit).limit(limit)
        annonces = [doc async for doc in cursor]
        return await self._populate_conducteurs(annonces), total

    async def get_annonces(self, filters: AnnonceFilters, page: int = 1, limit: int = 12, sort: Optional[str] = None):
        return await self._paginate(build_annonce_query(filters), page, limit, sort)

    async def rechercher_annonces(self, filters: AnnonceFilters, colis: ColisRecherche, page: int = 1, limit: int = 12, sort: Optional[str] = None):
        query = build_annonce_query(filters)
        query.update(capacity_query(colis))
        return await self._paginate(query, page, limit, sort)

    async def get_mes_annonces(self, user: Dict[str, Any], statut: Optional[str] = None, page: int = 1, limit: int = 12):
        query: Dict[str, Any] = {"conducteur": user["_id"], **NOT_DELETED}
        if statut:
            query["statut"] = statut
        return await self._paginate(query, page, limit, "-createdAt")

    async def get_annonce(self, annonce_id, viewer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Retourne l'annonce ; les vues du propriétaire ne sont pas comptées"""
        annonce = await self.get_or_404(annonce_id)
        if not viewer or viewer["_id"] != annonce["conducteur"]:
            annonce = await self.collection.find_one_and_update(
                {"_id": annonce["_id"]},
                {"$inc": {"statistiques.nombreVues": 1}},
                return_document=ReturnDocument.AFTER,
            )
        await self._populate_conducteurs([annonce])
        return annonce

    # ─────────────── écriture ───────────────

    async def create_annonce(self, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        if user.get("role") != UserRole.CONDUCTEUR.value:
            raise PermissionDeniedError("Seuls les conducteurs peuvent créer des annonces")

        now = utcnow()
        document = {
            **data,
            "conducteur": user["_id"],
            "statut": AnnonceStatut.ACTIVE.value,
            "statistiques": {
                "nombreVues": 0,
                "nombreDemandes": 0,
                "nombreDemandesAcceptees": 0,
                "tauxAcceptation": 0,
            },
            "commentaires": [],
            "moderationAdmin": {"verifie": False},
            "supprime": False,
            "dateSuppression": None,
            "supprimePar": None,
            "createdAt": now,
            "updatedAt": now,
        }
        apply_derived_fields(document)

        result = await self.collection.insert_one(document)
        document["_id"] = result.inserted_id
        await self.db[USERS].update_one({"_id": user["_id"]}, {"$inc": {"statistiques.nombreAnnonces": 1}})
        logger.info(f"✅ Annonce créée : id={result.inserted_id} par conducteur={user['_id']}")
        return document

    def _check_owner_or_admin(self, annonce: Dict[str, Any], user: Dict[str, Any], action: str) -> None:
        if user.get("role") != UserRole.ADMIN.value and annonce["conducteur"] != user["_id"]:
            logger.warning(f"⛔ {action} refusée sur annonce {annonce['_id']} pour {user['_id']}")
            raise PermissionDeniedError(f"Non autorisé à {action} cette annonce")

    async def update_annonce(self, annonce_id, patch: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        annonce = await self.get_or_404(annonce_id)
        self._check_owner_or_admin(annonce, user, "modifier")

        if not patch:
            raise BusinessRuleError("Aucune modification fournie")

        # Patch de statut seul : écriture directe du champ
        if set(patch) == {"statut"}:
            updated = await self.collection.find_one_and_update(
                {"_id": annonce["_id"]},
                {"$set": {"statut": patch["statut"], "updatedAt": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
            logger.info(f"✅ Statut de l'annonce {annonce['_id']} -> {patch['statut']}")
            return updated

        merged = {**annonce, **patch}
        # Départ ou durée modifiés : l'arrivée estimée est recalculée sauf si fournie
        if ("planning" in patch or "trajet" in patch) and "dateArriveeEstimee" not in (patch.get("planning") or {}):
            merged["planning"] = {**(merged.get("planning") or {}), "dateArriveeEstimee": None}
        apply_derived_fields(merged)

        to_set = {key: merged[key] for key in patch}
        to_set["capacite"] = merged.get("capacite")
        to_set["planning"] = merged.get("planning")
        to_set["statistiques.tauxAcceptation"] = merged["statistiques"]["tauxAcceptation"]
        to_set["updatedAt"] = utcnow()

        updated = await self.collection.find_one_and_update(
            {"_id": annonce["_id"]},
            {"$set": to_set},
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"✅ Annonce mise à jour : id={annonce['_id']}")
        return updated

    async def delete_annonce(self, annonce_id, user: Dict[str, Any]) -> None:
        """
        Suppression logique de l'annonce et de ses demandes.

        L'annonce est d'abord marquée supprimée de façon atomique (plus aucune
        nouvelle demande ne peut la viser), puis les demandes en cours sont
        vérifiées : s'il en existe, l'annonce est restaurée et la suppression refusée.
        """
        annonce = await self.get_or_404(annonce_id)
        self._check_owner_or_admin(annonce, user, "supprimer")

        now = utcnow()
        claimed = await self.collection.find_one_and_update(
            {"_id": annonce["_id"], **NOT_DELETED},
            {"$set": {"supprime": True, "dateSuppression": now, "supprimePar": user["_id"]}},
        )
        if not claimed:
            raise NotFoundError("Annonce non trouvée")

        en_cours = await self.db[DEMANDES].count_documents({
            "annonce": annonce["_id"],
            "statut": {"$in": STATUTS_ACTIFS},
            **NOT_DELETED,
        })
        if en_cours > 0:
            await self.collection.update_one(
                {"_id": annonce["_id"]},
                {"$set": {"supprime": False, "dateSuppression": None, "supprimePar": None}},
            )
            logger.warning(f"⚠️ Suppression refusée : annonce {annonce['_id']} a {en_cours} demande(s) en cours")
            raise BusinessRuleError("Impossible de supprimer une annonce avec des demandes en cours")

        await self.db[DEMANDES].update_many(
            {"annonce": annonce["_id"], **NOT_DELETED},
            {"$set": {"supprime": True, "dateSuppression": now, "supprimePar": user["_id"]}},
        )
        await self.db[USERS].update_one(
            {"_id": annonce["conducteur"]},
            {"$inc": {"statistiques.nombreAnnonces": -1}},
        )
        logger.info(f"✅ Annonce supprimée : id={annonce['_id']} par {user['_id']}")

    # ─────────────── compteurs ───────────────

    async def _bump_counters(self, annonce_id: ObjectId, inc: Dict[str, int]) -> Optional[Dict[str, Any]]:
        updated = await self.collection.find_one_and_update(
            {"_id": annonce_id},
            {"$inc": inc},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return None
        stats = updated.get("statistiques") or {}
        total = stats.get("nombreDemandes", 0)
        acceptees = stats.get("nombreDemandesAcceptees", 0)
        taux = calculer_taux_acceptation(total, acceptees)
        # Écriture conditionnelle : un écrivain concurrent recalculera depuis ses propres compteurs
        await self.collection.update_one(
            {"_id": annonce_id, "statistiques.nombreDemandes": total, "statistiques.nombreDemandesAcceptees": acceptees},
            {"$set": {"statistiques.tauxAcceptation": taux}},
        )
        updated["statistiques"]["tauxAcceptation"] = taux
        return updated

    async def register_demande(self, annonce_id: ObjectId):
        return await self._bump_counters(annonce_id, {"statistiques.nombreDemandes": 1})

    async def register_acceptation(self, annonce_id: ObjectId):
        return await self._bump_counters(annonce_id, {"statistiques.nombreDemandesAcceptees": 1})

    # ─────────────── commentaires ───────────────

    async def add_commentaire(self, annonce_id, user: Dict[str, Any], message: str) -> Dict[str, Any]:
        annonce = await self.get_or_404(annonce_id)
        commentaire = {
            "_id": ObjectId(),
            "utilisateur": user["_id"],
            "message": message,
            "dateCommentaire": utcnow(),
            "reponse": None,
        }
        await self.collection.update_one({"_id": annonce["_id"]}, {"$push": {"commentaires": commentaire}})
        logger.info(f"✅ Commentaire ajouté sur annonce {annonce['_id']} par {user['_id']}")
        return commentaire

    async def repondre_commentaire(self, annonce_id, commentaire_id, user: Dict[str, Any], message: str) -> Dict[str, Any]:
        """Une seule réponse par commentaire, réservée au propriétaire de l'annonce"""
        annonce = await self.get_or_404(annonce_id)
        if annonce["conducteur"] != user["_id"]:
            raise PermissionDeniedError("Seul le propriétaire de l'annonce peut répondre")

        cid = to_object_id(commentaire_id, "commentaireId")
        if not any(c.get("_id") == cid for c in annonce.get("commentaires", [])):
            raise NotFoundError("Commentaire non trouvé")

        reponse = {"message": message, "dateReponse": utcnow()}
        result = await self.collection.update_one(
            {"_id": annonce["_id"], "commentaires": {"$elemMatch": {"_id": cid, "reponse": None}}},
            {"$set": {"commentaires.$.reponse": reponse}},
        )
        if result.modified_count == 0:
            raise BusinessRuleError("Ce commentaire a déjà une réponse")
        return reponse

    # ─────────────── statistiques ───────────────

    async def statistiques(self) -> Dict[str, Any]:
        par_statut = {}
        async for row in self.collection.aggregate([
            {"$match": NOT_DELETED},
            {"$group": {"_id": "$statut", "count": {"$sum": 1}}},
        ]):
            par_statut[row["_id"]] = row["count"]

        top_destinations = []
        async for row in self.collection.aggregate([
            {"$match": NOT_DELETED},
            {"$group": {"_id": "$trajet.destination.ville", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": 10},
        ]):
            top_destinations.append({"ville": row["_id"], "count": row["count"]})

        return {
            "total": sum(par_statut.values()),
            "parStatut": par_statut,
            "topDestinations": top_destinations,
        }
