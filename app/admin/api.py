from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
import logging

from app.admin.export import EXPORT_FORMATS, fetch_export, to_csv
from app.admin.schemas import BadgeUpdate, StatutAnnonceUpdate, StatutUtilisateurUpdate
from app.admin.services import AdminService
from app.annonces.services import AnnonceService
from app.auth.permissions import require_admin
from app.auth.schemas import AdminCreate
from app.auth.services import create_admin
from app.db.mongo import get_database
from app.demandes.schemas import ResolutionLitige
from app.demandes.services import DemandeService
from app.users.models import public_user
from app.utils.errors import ValidationAppError
from app.utils.mongodb_utils import prepare_model_for_mongodb, utcnow
from app.utils.responses import paginated_response, success_response

logger = logging.getLogger(__name__)

# Toutes les routes exigent le rôle admin
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ===============================
# TABLEAU DE BORD
# ===============================
@router.get("/dashboard")
async def dashboard(db=Depends(get_database)):
    return success_response(await AdminService(db).dashboard())


@router.get("/metriques")
async def metriques(db=Depends(get_database)):
    return success_response(await AdminService(db).metriques())


# ===============================
# UTILISATEURS
# ===============================
@router.get("/utilisateurs")
async def list_utilisateurs(
    role: Optional[str] = Query(None),
    statut: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_database),
):
    users, total = await AdminService(db).list_utilisateurs(role, statut, q, page, limit)
    return paginated_response(users, page, limit, total)


@router.post("/utilisateurs/admin", status_code=status.HTTP_201_CREATED)
async def creer_admin(
    data: AdminCreate,
    current_user: dict = Depends(require_admin),
    db=Depends(get_database),
):
    admin = await create_admin(db, prepare_model_for_mongodb(data), current_user)
    return success_response(public_user(admin, include_private=True), "Administrateur créé avec succès", status.HTTP_201_CREATED)


@router.put("/utilisateurs/{user_id}/statut")
async def changer_statut_utilisateur(
    user_id: str,
    data: StatutUtilisateurUpdate,
    current_user: dict = Depends(require_admin),
    db=Depends(get_database),
):
    user = await AdminService(db).changer_statut_utilisateur(user_id, data.statut.value, data.raison, current_user)
    return success_response(user, "Statut de l'utilisateur mis à jour")


@router.put("/utilisateurs/{user_id}/badges")
async def gerer_badge(
    user_id: str,
    data: BadgeUpdate,
    current_user: dict = Depends(require_admin),
    db=Depends(get_database),
):
    user = await AdminService(db).gerer_badge(user_id, data.action, data.badge.value, current_user)
    return success_response(user, "Badges mis à jour")


# ===============================
# ANNONCES
# ===============================
@router.get("/annonces")
async def list_annonces(
    statut: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_database),
):
    annonces, total = await AdminService(db).list_annonces(statut, q, page, limit)
    return paginated_response(annonces, page, limit, total)


@router.put("/annonces/{annonce_id}/statut")
async def changer_statut_annonce(
    annonce_id: str,
    data: StatutAnnonceUpdate,
    current_user: dict = Depends(require_admin),
    db=Depends(get_database),
):
    annonce = await AdminService(db).changer_statut_annonce(annonce_id, data.statut.value, data.raison, current_user)
    return success_response(annonce, "Statut de l'annonce mis à jour")


@router.delete("/annonces/{annonce_id}")
async def supprimer_annonce(annonce_id: str, current_user: dict = Depends(require_admin), db=Depends(get_database)):
    await AnnonceService(db).delete_annonce(annonce_id, current_user)
    return success_response(message="Annonce supprimée avec succès")


# ===============================
# DEMANDES / LITIGES
# ===============================
@router.get("/demandes")
async def list_demandes(
    statut: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_database),
):
    demandes, total = await DemandeService(db).list_all(statut=statut, page=page, limit=limit)
    return paginated_response(demandes, page, limit, total)


@router.get("/litiges")
async def list_litiges(
    resolu: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_database),
):
    demandes, total = await DemandeService(db).list_all(litige=True, resolu=resolu, page=page, limit=limit)
    return paginated_response(demandes, page, limit, total)


@router.put("/demandes/{demande_id}/resoudre-litige")
async def resoudre_litige(
    demande_id: str,
    data: ResolutionLitige,
    current_user: dict = Depends(require_admin),
    db=Depends(get_database),
):
    demande = await DemandeService(db).resoudre_litige(demande_id, data.resolution, data.decision.value, current_user)
    return success_response(demande, "Litige résolu avec succès")


# ===============================
# EXPORT
# ===============================
@router.get("/export/{type_export}")
async def export(
    type_export: str,
    format: str = Query("json"),
    dateDebut: Optional[datetime] = Query(None),
    dateFin: Optional[datetime] = Query(None),
    db=Depends(get_database),
):
    if format not in EXPORT_FORMATS:
        raise ValidationAppError(f"Format d'export invalide (valeurs possibles : {', '.join(EXPORT_FORMATS)})")

    documents = await fetch_export(db, type_export, dateDebut, dateFin)
    logger.info(f"📦 Export {type_export} ({format}) : {len(documents)} document(s)")

    if format == "csv":
        filename = f"{type_export}_{utcnow():%Y%m%d_%H%M%S}.csv"
        return Response(
            content=to_csv(documents),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return success_response({"type": type_export, "total": len(documents), "items": documents})
