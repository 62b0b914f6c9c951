from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from app.auth.dependencies import get_current_user, get_current_user_optional
from app.auth.permissions import require_admin
from app.db.mongo import get_database
from app.evaluations.schemas import (
    EvaluationCreate, EvaluationUpdate, ModerationRequest, ReponseEvaluation, SignalementCreate,
)
from app.evaluations.services import EvaluationService
from app.utils.mongodb_utils import prepare_model_for_mongodb
from app.utils.responses import paginated_response, success_response

router = APIRouter(prefix="/api/evaluations", tags=["evaluations"])


# ===============================
# CRÉATION
# ===============================
@router.post("", status_code=status.HTTP_201_CREATED)
async def create_evaluation(
    evaluation: EvaluationCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    created = await EvaluationService(db).create_evaluation(prepare_model_for_mongodb(evaluation), current_user)
    return success_response(created, "Évaluation créée avec succès", status.HTTP_201_CREATED)


@router.get("/peut-evaluer/{demande_id}")
async def peut_evaluer(demande_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    return success_response(await EvaluationService(db).peut_evaluer(demande_id, current_user))


# ===============================
# ADMIN (déclaré avant /{evaluation_id})
# ===============================
@router.get("/admin/moderation")
async def file_moderation(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(require_admin),
    db=Depends(get_database),
):
    evaluations, total = await EvaluationService(db).file_moderation(page, limit)
    return paginated_response(evaluations, page, limit, total)


@router.get("/admin/statistiques")
async def statistiques(current_user: dict = Depends(require_admin), db=Depends(get_database)):
    return success_response(await EvaluationService(db).statistiques_globales())


# ===============================
# LECTURE
# ===============================
@router.get("/mes-evaluations")
async def mes_evaluations(
    type: str = Query("recues", pattern="^(recues|donnees)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    evaluations, total = await EvaluationService(db).get_mes_evaluations(current_user, type, page, limit)
    return paginated_response(evaluations, page, limit, total)


@router.get("/utilisateur/{user_id}")
async def evaluations_utilisateur(
    user_id: str,
    typeEvaluation: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: Optional[dict] = Depends(get_current_user_optional),
    db=Depends(get_database),
):
    service = EvaluationService(db)
    evaluations, total = await service.get_evaluations_utilisateur(user_id, current_user, typeEvaluation, page, limit)
    return paginated_response(evaluations, page, limit, total)


@router.get("/resume/{user_id}")
async def resume_utilisateur(user_id: str, db=Depends(get_database)):
    return success_response(await EvaluationService(db).resume_utilisateur(user_id))


@router.get("/{evaluation_id}")
async def get_evaluation(
    evaluation_id: str,
    current_user: Optional[dict] = Depends(get_current_user_optional),
    db=Depends(get_database),
):
    return success_response(await EvaluationService(db).get_evaluation(evaluation_id, current_user))


# ===============================
# MODIFICATION / SUPPRESSION
# ===============================
@router.put("/{evaluation_id}")
async def update_evaluation(
    evaluation_id: str,
    patch: EvaluationUpdate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    updated = await EvaluationService(db).mettre_a_jour(evaluation_id, prepare_model_for_mongodb(patch), current_user)
    return success_response(updated, "Évaluation mise à jour avec succès")


@router.delete("/{evaluation_id}")
async def delete_evaluation(evaluation_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    await EvaluationService(db).supprimer(evaluation_id, current_user)
    return success_response(message="Évaluation supprimée avec succès")


# ===============================
# INTERACTIONS
# ===============================
@router.post("/{evaluation_id}/reponse")
async def repondre(
    evaluation_id: str,
    data: ReponseEvaluation,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    updated = await EvaluationService(db).repondre(evaluation_id, data.commentaire, current_user)
    return success_response(updated, "Réponse ajoutée avec succès")


@router.post("/{evaluation_id}/utile")
async def marquer_utile(evaluation_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    updated = await EvaluationService(db).marquer_utile(evaluation_id, current_user)
    return success_response({"nombreLikes": updated["statistiques"]["nombreLikes"]}, "Merci pour votre retour")


@router.post("/{evaluation_id}/signaler")
async def signaler(
    evaluation_id: str,
    data: SignalementCreate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    await EvaluationService(db).signaler(evaluation_id, data.motif.value, data.details, current_user)
    return success_response(message="Évaluation signalée, elle sera examinée par un administrateur")


@router.put("/{evaluation_id}/moderation")
async def moderer(
    evaluation_id: str,
    data: ModerationRequest,
    current_user: dict = Depends(require_admin),
    db=Depends(get_database),
):
    updated = await EvaluationService(db).moderer(
        evaluation_id,
        data.action.value,
        current_user,
        raison_rejet=data.raisonRejet,
        decision=data.decision.value if data.decision else None,
    )
    return success_response(updated, "Évaluation modérée avec succès")
