from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from typing import Optional
from app.config import settings
import logging

logger = logging.getLogger(__name__)


def _encode(data: dict, expires_delta: timedelta, audience: str) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode.update({"exp": expire, "iss": settings.JWT_ISSUER, "aud": audience})

    if "user_id" in to_encode:
        to_encode["sub"] = str(to_encode["user_id"])

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.ALGORITHM)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Crée un token JWT d'accès signé avec les informations fournies.

    :param data: Dictionnaire avec les données à encoder (ex: {"user_id": "...", "role": "conducteur"})
    :param expires_delta: Durée de validité du token (timedelta)
    :return: Token JWT encodé
    """
    token = _encode(
        data,
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        settings.JWT_AUDIENCE,
    )
    logger.info(f"✅ Token généré pour user_id={data.get('user_id')}")
    return token


def create_refresh_token(data: dict) -> str:
    return _encode(data, timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS), settings.JWT_REFRESH_AUDIENCE)


def decode_access_token(token: str, audience: Optional[str] = None) -> Optional[dict]:
    """
    🔐 Décode et vérifie un token JWT (signature, expiration, émetteur, audience).

    Retourne le payload si le token est valide, sinon None.
    Vérifie aussi la présence du champ 'sub' (subject) recommandé dans le standard JWT.
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.ALGORITHM],
            audience=audience or settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )

        sub = payload.get("sub")
        if not sub:
            logger.warning("⚠️ Token valide mais champ 'sub' manquant dans le payload.")
            return None

        return payload

    except JWTError as e:
        logger.warning(f"❌ Échec de décodage du token : {e}")
        return None


def decode_refresh_token(token: str) -> Optional[dict]:
    return decode_access_token(token, audience=settings.JWT_REFRESH_AUDIENCE)
