from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from app.annonces.schemas import (
    AnnonceCreate, AnnonceFilters, AnnonceUpdate, ColisRecherche,
    CommentaireCreate, ReponseCommentaireCreate,
)
from app.annonces.services import AnnonceService
from app.auth.dependencies import get_current_user, get_current_user_optional
from app.auth.permissions import require_admin, require_conducteur
from app.db.mongo import get_database
from app.utils.mongodb_utils import prepare_model_for_mongodb
from app.utils.responses import paginated_response, success_response

router = APIRouter(prefix="/api/annonces", tags=["annonces"])


def split_types(types: Optional[List[str]]) -> Optional[List[str]]:
    """Accepte ?typesMarchandise=a&typesMarchandise=b ou ?typesMarchandise=a,b"""
    if not types:
        return None
    return [t.strip() for value in types for t in value.split(",") if t.strip()]


def annonce_filters(
    villeDepart: Optional[str] = Query(None),
    villeDestination: Optional[str] = Query(None),
    dateMin: Optional[datetime] = Query(None),
    dateMax: Optional[datetime] = Query(None),
    prixMin: Optional[float] = Query(None, ge=0),
    prixMax: Optional[float] = Query(None, ge=0),
    typesMarchandise: Optional[List[str]] = Query(None),
    statut: Optional[str] = Query("active"),
) -> AnnonceFilters:
    return AnnonceFilters(
        villeDepart=villeDepart,
        villeDestination=villeDestination,
        dateMin=dateMin,
        dateMax=dateMax,
        prixMin=prixMin,
        prixMax=prixMax,
        typesMarchandise=split_types(typesMarchandise),
        statut=statut,
    )


# ===============================
# CRÉATION
# ===============================
@router.post("", status_code=status.HTTP_201_CREATED)
async def create_annonce(
    annonce: AnnonceCreate,
    current_user: dict = Depends(require_conducteur),
    db=Depends(get_database),
):
    created = await AnnonceService(db).create_annonce(prepare_model_for_mongodb(annonce), current_user)
    return success_response(created, "Annonce créée avec succès", status.HTTP_201_CREATED)


# ===============================
# LISTE / RECHERCHE
# ===============================
@router.get("")
async def get_annonces(
    filters: AnnonceFilters = Depends(annonce_filters),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort: str = Query("-createdAt"),
    db=Depends(get_database),
):
    annonces, total = await AnnonceService(db).get_annonces(filters, page, limit, sort)
    return paginated_response(annonces, page, limit, total)


@router.get("/rechercher")
async def rechercher_annonces(
    filters: AnnonceFilters = Depends(annonce_filters),
    poids: Optional[float] = Query(None, gt=0),
    longueur: Optional[float] = Query(None, gt=0),
    largeur: Optional[float] = Query(None, gt=0),
    hauteur: Optional[float] = Query(None, gt=0),
    typeMarchandise: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    sort: str = Query("-createdAt"),
    db=Depends(get_database),
):
    colis = ColisRecherche(poids=poids, longueur=longueur, largeur=largeur, hauteur=hauteur, typeMarchandise=typeMarchandise)
    annonces, total = await AnnonceService(db).rechercher_annonces(filters, colis, page, limit, sort)
    return paginated_response(annonces, page, limit, total)


@router.get("/statistiques")
async def get_statistiques(current_user: dict = Depends(require_admin), db=Depends(get_database)):
    return success_response(await AnnonceService(db).statistiques())


@router.get("/mes-annonces")
async def get_mes_annonces(
    statut: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    annonces, total = await AnnonceService(db).get_mes_annonces(current_user, statut, page, limit)
    return paginated_response(annonces, page, limit, total)


# ===============================
# DÉTAIL / MODIFICATION / SUPPRESSION
# ===============================
@router.get("/{annonce_id}")
async def get_annonce(
    annonce_id: str,
    current_user: Optional[dict] = Depends(get_current_user_optional),
    db=Depends(get_database),
):
    return success_response(await AnnonceService(db).get_annonce(annonce_id, current_user))


@router.put("/{annonce_id}")
async def update_annonce(
    annonce_id: str,
    patch: AnnonceUpdate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    updated = await AnnonceService(db).update_annonce(annonce_id, prepare_model_for_mongodb(patch), current_user)
    return success_response(updated, "Annonce mise à jour avec succès")


@router.delete("/{annonce_id}")
async def delete_annonce(
    annonce_id: str,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    await AnnonceService(db).delete_annonce(annonce_id, current_user)
    return success_response(message="Annonce supprimée avec succès")


# ===============================
# COMMENTAIRES
# ===============================
@router.post("/{annonce_id}/commentaires", status_code=status.HTTP_201_CREATED)
async def add_commentaire(
    annonce_id: str,
    data: CommentaireCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    commentaire = await AnnonceService(db).add_commentaire(annonce_id, current_user, data.message)
    return success_response(commentaire, "Commentaire ajouté", status.HTTP_201_CREATED)


@router.post("/{annonce_id}/commentaires/{commentaire_id}/reponse")
async def repondre_commentaire(
    annonce_id: str,
    commentaire_id: str,
    data: ReponseCommentaireCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    reponse = await AnnonceService(db).repondre_commentaire(annonce_id, commentaire_id, current_user, data.message)
    return success_response(reponse, "Réponse ajoutée")
