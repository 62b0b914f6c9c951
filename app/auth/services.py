import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from app.auth import jwt_handler
from app.auth.password import generate_token_pair, hash_password, hash_token, verify_password
from app.config import settings
from app.db.mongo import USERS
from app.users.models import UserRole, UserStatus, is_locked, new_user_document, public_user
from app.utils.email import notify_user
from app.utils.errors import AuthenticationError, BusinessRuleError, PermissionDeniedError
from app.utils.mongodb_utils import to_object_id, utcnow

logger = logging.getLogger(__name__)

RESET_TOKEN_TTL_MINUTES = 10


def issue_tokens(user: Dict[str, Any]) -> Dict[str, str]:
    claims = {"user_id": str(user["_id"]), "role": user["role"]}
    return {
        "token": jwt_handler.create_access_token(claims),
        "refreshToken": jwt_handler.create_refresh_token(claims),
    }


async def register_user(db, data: Dict[str, Any], role: Optional[str] = None, statut: str = UserStatus.ACTIF.value) -> Dict[str, Any]:
    """Inscription : unicité de l'email, hash bcrypt, email de vérification « au mieux »"""
    email = data["email"].lower()
    if await db[USERS].find_one({"email": email}):
        raise BusinessRuleError("Un utilisateur avec cet email existe déjà")

    document = new_user_document(data, hash_password(data["motDePasse"]), role or data.get("role"), statut)
    raw_token, token_hash = generate_token_pair()
    document["tokenVerificationEmail"] = token_hash

    result = await db[USERS].insert_one(document)
    document["_id"] = result.inserted_id
    logger.info(f"✅ Utilisateur créé : id={result.inserted_id}, role={document['role']}")

    await notify_user(document, "verification_email", {"lien": f"{settings.FRONTEND_URL}/verify-email/{raw_token}"})
    return document


async def authenticate(db, email: str, password: str) -> Dict[str, Any]:
    """
    🔐 Vérifie les identifiants et gère le verrouillage après échecs répétés
    """
    user = await db[USERS].find_one({"email": email.lower(), "supprime": {"$ne": True}})
    if not user:
        logger.warning(f"⛔ Connexion refusée : email inconnu {email}")
        raise AuthenticationError("Email ou mot de passe incorrect")

    now = utcnow()
    if is_locked(user, now):
        raise AuthenticationError("Compte temporairement bloqué suite à trop de tentatives. Réessayez plus tard.")

    if not verify_password(password, user.get("motDePasse")):
        tentatives = (user.get("tentativesConnexion") or {}).get("nombre", 0) + 1
        update: Dict[str, Any] = {"tentativesConnexion.nombre": tentatives}
        if tentatives >= settings.MAX_LOGIN_ATTEMPTS:
            update["tentativesConnexion.bloqueJusqu"] = now + timedelta(hours=settings.LOCK_DURATION_HOURS)
            update["tentativesConnexion.nombre"] = 0
            logger.warning(f"⛔ Compte {user['_id']} bloqué après {tentatives} échecs")
        await db[USERS].update_one({"_id": user["_id"]}, {"$set": update})
        raise AuthenticationError("Email ou mot de passe incorrect")

    if user.get("statut") == UserStatus.SUSPENDU.value:
        raise PermissionDeniedError("Votre compte a été suspendu. Contactez l'administrateur.")

    await db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "derniereConnexion": now,
            "tentativesConnexion": {"nombre": 0, "bloqueJusqu": None},
        }},
    )
    user["derniereConnexion"] = now
    logger.info(f"🔐 Connexion réussie : id={user['_id']}")
    return user


async def refresh_session(db, refresh_token: str) -> Dict[str, Any]:
    payload = jwt_handler.decode_refresh_token(refresh_token)
    if not payload:
        raise AuthenticationError("Refresh token invalide")

    user = await db[USERS].find_one({"_id": to_object_id(payload["sub"]), "supprime": {"$ne": True}})
    if not user or user.get("statut") != UserStatus.ACTIF.value:
        raise AuthenticationError("Utilisateur non trouvé ou inactif")
    return {**issue_tokens(user), "user": public_user(user, include_private=True)}


async def change_password(db, user: Dict[str, Any], old_password: str, new_password: str) -> None:
    if not verify_password(old_password, user.get("motDePasse")):
        raise BusinessRuleError("Mot de passe actuel incorrect")
    await db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"motDePasse": hash_password(new_password), "updatedAt": utcnow()}},
    )
    logger.info(f"🔐 Mot de passe modifié : id={user['_id']}")


async def request_password_reset(db, email: str) -> None:
    """Ne révèle jamais si l'email existe"""
    user = await db[USERS].find_one({"email": email.lower(), "supprime": {"$ne": True}})
    if not user:
        logger.info(f"⚠️ Réinitialisation demandée pour un email inconnu : {email}")
        return

    raw_token, token_hash = generate_token_pair()
    await db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"tokenResetMotDePasse": {
            "hash": token_hash,
            "expire": utcnow() + timedelta(minutes=RESET_TOKEN_TTL_MINUTES),
        }}},
    )
    await notify_user(user, "reset_password", {"lien": f"{settings.FRONTEND_URL}/reset-password/{raw_token}"})


async def reset_password(db, raw_token: str, new_password: str) -> Dict[str, Any]:
    user = await db[USERS].find_one_and_update(
        {
            "tokenResetMotDePasse.hash": hash_token(raw_token),
            "tokenResetMotDePasse.expire": {"$gt": utcnow()},
        },
        {"$set": {
            "motDePasse": hash_password(new_password),
            "tokenResetMotDePasse": None,
            "tentativesConnexion": {"nombre": 0, "bloqueJusqu": None},
            "updatedAt": utcnow(),
        }},
    )
    if not user:
        raise BusinessRuleError("Token invalide ou expiré")
    logger.info(f"🔐 Mot de passe réinitialisé : id={user['_id']}")
    return user


async def verify_email(db, raw_token: str) -> None:
    result = await db[USERS].update_one(
        {"tokenVerificationEmail": hash_token(raw_token)},
        {"$set": {"emailVerifie": True, "tokenVerificationEmail": None, "updatedAt": utcnow()}},
    )
    if result.modified_count == 0:
        raise BusinessRuleError("Token de vérification invalide")


async def create_admin(db, data: Dict[str, Any], created_by: Dict[str, Any]) -> Dict[str, Any]:
    """Création d'un administrateur : l'échec de l'email de bienvenue n'annule pas la création"""
    admin = await register_user(db, data, role=UserRole.ADMIN.value)
    await db[USERS].update_one({"_id": admin["_id"]}, {"$set": {"emailVerifie": True}})
    logger.info(f"✅ Administrateur {admin['_id']} créé par {created_by['_id']}")
    await notify_user(admin, "bienvenue_admin", {})
    return admin
