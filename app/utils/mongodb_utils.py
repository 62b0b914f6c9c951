# app/utils/mongodb_utils.py
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel

from app.utils.errors import ValidationAppError

# Filtre commun : exclut les documents supprimés logiquement
NOT_DELETED = {"supprime": {"$ne": True}}


def utcnow() -> datetime:
    """Datetime UTC naïf, tel que MongoDB le restitue."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_object_id(value: Any, field: str = "id") -> ObjectId:
    """
    Convertit une valeur en ObjectId ou lève une erreur de validation (400)
    """
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationAppError(f"Identifiant invalide pour '{field}'", errors=[{"champ": field, "message": "ObjectId invalide"}])


def convert_pydantic_for_mongodb(data: Any) -> Any:
    """
    Convertit les types Pydantic pour qu'ils soient compatibles avec MongoDB

    - Enum -> valeur
    - date -> datetime (minuit)
    - datetime aware -> datetime UTC naïf
    - traitement récursif des listes et dictionnaires
    """
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, datetime):
        return normalize_datetime(data)
    if isinstance(data, date):
        return datetime(data.year, data.month, data.day)
    if isinstance(data, dict):
        return {key: convert_pydantic_for_mongodb(value) for key, value in data.items()}
    if isinstance(data, (list, tuple, set)):
        return [convert_pydantic_for_mongodb(item) for item in data]
    return data


def prepare_model_for_mongodb(model_instance: BaseModel, exclude_fields: Optional[set] = None) -> Dict[str, Any]:
    """
    Prépare une instance de modèle Pydantic pour MongoDB (champs None exclus)
    """
    data = model_instance.model_dump(exclude=exclude_fields or set(), exclude_none=True)
    return convert_pydantic_for_mongodb(data)


def flatten_for_set(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Aplatit un patch imbriqué en notation pointée pour un `$set` partiel."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and value:
            flat.update(flatten_for_set(value, path))
        else:
            flat[path] = value
    return flat


def serialize_document(value: Any) -> Any:
    """
    Convertit un résultat MongoDB en structure JSON (ObjectId et datetime en chaînes)
    """
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: serialize_document(item) for key, item in value.items()}
    if isinstance(value, list):
        return [serialize_document(item) for item in value]
    return value


def build_pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    pages = (total + limit - 1) // limit if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": pages,
        "hasNext": page < pages,
        "hasPrev": page > 1,
    }
