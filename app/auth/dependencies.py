from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import logging

from app.auth.jwt_handler import decode_access_token
from app.db.mongo import get_database, USERS
from app.users.models import UserStatus, is_locked
from app.utils.errors import AuthenticationError
from app.utils.mongodb_utils import to_object_id

logger = logging.getLogger(__name__)

# Extraction du token depuis l'en-tête Authorization: Bearer <token>
bearer_scheme = HTTPBearer(auto_error=False)

# Tokens invalidés par /logout (mémoire du processus)
token_blacklist = set()


async def resolve_user_from_token(token: Optional[str], db) -> dict:
    """
    🔐 Retourne le document utilisateur associé au token ou lève AuthenticationError (401)
    """
    if not token:
        logger.warning("⛔ Accès refusé : token manquant")
        raise AuthenticationError("Accès refusé. Token manquant.")

    if token in token_blacklist:
        raise AuthenticationError("Token révoqué. Veuillez vous reconnecter.")

    payload = decode_access_token(token)
    if not payload:
        raise AuthenticationError("Token invalide ou expiré. Veuillez vous reconnecter.")

    user = await db[USERS].find_one({"_id": to_object_id(payload["sub"], "sub"), "supprime": {"$ne": True}})
    if not user:
        logger.warning(f"❌ Utilisateur introuvable : id={payload['sub']}")
        raise AuthenticationError("Utilisateur non trouvé")

    if user.get("statut") != UserStatus.ACTIF.value:
        logger.warning(f"⛔ Compte non actif : id={user['_id']} statut={user.get('statut')}")
        raise AuthenticationError("Compte suspendu ou en attente de validation")

    if is_locked(user):
        raise AuthenticationError("Compte temporairement bloqué")

    return user


# 🔒 Récupération obligatoire de l'utilisateur
async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(get_database),
) -> dict:
    token = credentials.credentials if credentials else None
    return await resolve_user_from_token(token, db)


# 🔓 Version optionnelle : None si pas de token ou token invalide
async def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(get_database),
) -> Optional[dict]:
    if not credentials:
        return None
    try:
        return await resolve_user_from_token(credentials.credentials, db)
    except AuthenticationError:
        logger.warning("⚠️ Token optionnel invalide, accès anonyme")
        return None


async def get_current_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    return credentials.credentials if credentials else None
