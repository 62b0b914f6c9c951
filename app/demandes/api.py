from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from app.auth.dependencies import get_current_user
from app.auth.permissions import require_admin, require_conducteur, require_expediteur
from app.db.mongo import get_database
from app.demandes.models import with_virtuals
from app.demandes.schemas import (
    AnnulationDemande, CommunicationCreate, DemandeCreate, EtapeSuivi,
    LitigeCreate, PositionUpdate, ReponseDemande, StatutUpdate,
)
from app.demandes.services import DemandeService
from app.utils.mongodb_utils import prepare_model_for_mongodb
from app.utils.responses import paginated_response, success_response

router = APIRouter(prefix="/api/demandes", tags=["demandes"])


# ===============================
# SUIVI PUBLIC
# ===============================
@router.get("/suivi/{numero_suivi}")
async def suivre_demande(numero_suivi: str, db=Depends(get_database)):
    return success_response(await DemandeService(db).suivre(numero_suivi))


# ===============================
# CRÉATION / LISTES
# ===============================
@router.post("", status_code=status.HTTP_201_CREATED)
async def create_demande(
    demande: DemandeCreate,
    current_user: dict = Depends(require_expediteur),
    db=Depends(get_database),
):
    created = await DemandeService(db).create_demande(prepare_model_for_mongodb(demande), current_user)
    return success_response(with_virtuals(created), "Demande envoyée avec succès", status.HTTP_201_CREATED)


@router.get("/mes-demandes")
async def get_mes_demandes(
    statut: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: dict = Depends(require_expediteur),
    db=Depends(get_database),
):
    demandes, total = await DemandeService(db).list_mes_demandes(current_user, statut, page, limit)
    return paginated_response(demandes, page, limit, total)


@router.get("/recues")
async def get_demandes_recues(
    statut: Optional[str] = Query(None),
    annonce: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: dict = Depends(require_conducteur),
    db=Depends(get_database),
):
    demandes, total = await DemandeService(db).list_demandes_recues(current_user, statut, annonce, page, limit)
    return paginated_response(demandes, page, limit, total)


@router.get("/admin/statistiques")
async def get_statistiques(current_user: dict = Depends(require_admin), db=Depends(get_database)):
    return success_response(await DemandeService(db).statistiques())


@router.get("/{demande_id}")
async def get_demande(demande_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    return success_response(await DemandeService(db).get_demande(demande_id, current_user))


# ===============================
# CYCLE DE VIE
# ===============================
@router.put("/{demande_id}/reponse")
async def repondre_demande(
    demande_id: str,
    data: ReponseDemande,
    current_user: dict = Depends(require_conducteur),
    db=Depends(get_database),
):
    updated = await DemandeService(db).repondre(
        demande_id, data.action.value, current_user, data.message, data.montantAccepte
    )
    message = "Demande acceptée" if data.action.value == "accepter" else "Demande refusée"
    return success_response(with_virtuals(updated), message)


@router.put("/{demande_id}/statut")
async def update_statut(
    demande_id: str,
    data: StatutUpdate,
    current_user: dict = Depends(require_conducteur),
    db=Depends(get_database),
):
    updated = await DemandeService(db).update_statut(demande_id, data.statut.value, current_user, data.commentaire)
    return success_response(with_virtuals(updated), "Statut mis à jour")


@router.put("/{demande_id}/annuler")
async def annuler_demande(
    demande_id: str,
    data: AnnulationDemande,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    updated = await DemandeService(db).annuler(demande_id, data.motif, current_user)
    return success_response(with_virtuals(updated), "Demande annulée")


@router.post("/{demande_id}/litige")
async def signaler_litige(
    demande_id: str,
    data: LitigeCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    updated = await DemandeService(db).signaler_litige(demande_id, data.motif, current_user)
    return success_response(with_virtuals(updated), "Litige signalé")


# ===============================
# SUIVI / COMMUNICATIONS
# ===============================
@router.put("/{demande_id}/position")
async def update_position(
    demande_id: str,
    data: PositionUpdate,
    current_user: dict = Depends(require_conducteur),
    db=Depends(get_database),
):
    updated = await DemandeService(db).update_position(
        demande_id, data.latitude, data.longitude, data.adresse, current_user
    )
    return success_response(updated["suivi"], "Position mise à jour")


@router.post("/{demande_id}/etapes", status_code=status.HTTP_201_CREATED)
async def add_etape(
    demande_id: str,
    data: EtapeSuivi,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    updated = await DemandeService(db).add_etape(demande_id, data.lieu, data.statut, data.commentaire, current_user)
    return success_response(updated["suivi"], "Étape de suivi ajoutée", status.HTTP_201_CREATED)


@router.post("/{demande_id}/communications", status_code=status.HTTP_201_CREATED)
async def add_communication(
    demande_id: str,
    data: CommunicationCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    communication = await DemandeService(db).add_communication(demande_id, data.type.value, data.contenu, current_user)
    return success_response(communication, "Communication ajoutée", status.HTTP_201_CREATED)
