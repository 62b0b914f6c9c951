from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.auth.dependencies import get_current_token, get_current_user, get_current_user_optional, token_blacklist
from app.db.mongo import get_database
from app.users.schemas import ProfileUpdate, SuppressionCompte
from app.users.services import UserService
from app.utils.mongodb_utils import prepare_model_for_mongodb
from app.utils.responses import paginated_response, success_response

router = APIRouter(prefix="/api/users", tags=["users"])


# ===============================
# COMPTE CONNECTÉ
# ===============================
@router.put("/profile")
async def update_profile(
    patch: ProfileUpdate,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    updated = await UserService(db).update_profile(current_user, prepare_model_for_mongodb(patch))
    return success_response(updated, "Profil mis à jour avec succès")


@router.get("/dashboard")
async def dashboard(current_user: dict = Depends(get_current_user), db=Depends(get_database)):
    return success_response(await UserService(db).dashboard(current_user))


@router.delete("/compte")
async def supprimer_compte(
    data: SuppressionCompte,
    current_user: dict = Depends(get_current_user),
    token: Optional[str] = Depends(get_current_token),
    db=Depends(get_database),
):
    await UserService(db).supprimer_compte(current_user, data.motDePasse)
    if token:
        token_blacklist.add(token)
    return success_response(message="Compte supprimé avec succès")


# ===============================
# RECHERCHE / CLASSEMENT
# ===============================
@router.get("/rechercher")
async def rechercher(
    q: Optional[str] = Query(None),
    role: Optional[str] = Query(None, pattern="^(conducteur|expediteur)$"),
    ville: Optional[str] = Query(None),
    noteMin: Optional[float] = Query(None, ge=0, le=5),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db=Depends(get_database),
):
    users, total = await UserService(db).rechercher(q, role, ville, noteMin, page, limit)
    return paginated_response(users, page, limit, total)


@router.get("/top")
async def top(
    role: Optional[str] = Query(None, pattern="^(conducteur|expediteur)$"),
    limit: int = Query(10, ge=1, le=50),
    db=Depends(get_database),
):
    return success_response(await UserService(db).top(role, limit))


# ===============================
# PROFIL PUBLIC
# ===============================
@router.get("/{user_id}/profile")
async def get_profile(
    user_id: str,
    current_user: Optional[dict] = Depends(get_current_user_optional),
    db=Depends(get_database),
):
    return success_response(await UserService(db).get_profile(user_id, current_user))


@router.get("/{user_id}/statistiques")
async def get_statistiques(user_id: str, db=Depends(get_database)):
    return success_response(await UserService(db).statistiques(user_id))
