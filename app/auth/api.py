from fastapi import APIRouter, Depends, status
import logging

from app.auth import schemas, services
from app.auth.dependencies import get_current_token, get_current_user, token_blacklist
from app.db.mongo import get_database
from app.users.models import public_user
from app.utils.rate_limiter import login_rate_limiter
from app.utils.responses import success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(user: schemas.UserRegister, db=Depends(get_database)):
    """Inscription d'un conducteur ou d'un expéditeur"""
    data = user.model_dump(mode="json", exclude={"confirmMotDePasse"}, exclude_none=True)
    created = await services.register_user(db, data)
    return success_response(
        {**services.issue_tokens(created), "user": public_user(created, include_private=True)},
        "Inscription réussie",
        status.HTTP_201_CREATED,
    )


@router.post("/login", dependencies=[Depends(login_rate_limiter)])
async def login(credentials: schemas.UserLogin, db=Depends(get_database)):
    user = await services.authenticate(db, credentials.email, credentials.motDePasse)
    return success_response(
        {**services.issue_tokens(user), "user": public_user(user, include_private=True)},
        "Connexion réussie",
    )


@router.post("/refresh-token")
async def refresh_token(data: schemas.RefreshTokenRequest, db=Depends(get_database)):
    return success_response(await services.refresh_session(db, data.refreshToken), "Token renouvelé")


@router.get("/me")
async def get_me(current_user: dict = Depends(get_current_user)):
    return success_response(public_user(current_user, include_private=True))


@router.post("/logout")
async def logout(current_user: dict = Depends(get_current_user), token: str = Depends(get_current_token)):
    token_blacklist.add(token)
    logger.info(f"🔐 Déconnexion : id={current_user['_id']}")
    return success_response(message="Déconnexion réussie")


@router.put("/change-password")
async def change_password(
    data: schemas.ChangePasswordRequest,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_database),
):
    await services.change_password(db, current_user, data.ancienMotDePasse, data.nouveauMotDePasse)
    return success_response(message="Mot de passe modifié avec succès")


@router.post("/forgot-password")
async def forgot_password(data: schemas.ForgotPasswordRequest, db=Depends(get_database)):
    await services.request_password_reset(db, data.email)
    return success_response(message="Si cet email existe, un lien de réinitialisation a été envoyé")


@router.put("/reset-password/{token}")
async def reset_password(token: str, data: schemas.ResetPasswordRequest, db=Depends(get_database)):
    user = await services.reset_password(db, token, data.nouveauMotDePasse)
    return success_response(services.issue_tokens(user), "Mot de passe réinitialisé avec succès")


@router.get("/verify-email/{token}")
async def verify_email(token: str, db=Depends(get_database)):
    await services.verify_email(db, token)
    return success_response(message="Email vérifié avec succès")
