"""
Export des collections (JSON ou CSV)

Le CSV est produit par le module `csv` à partir des documents aplatis
(`trajet.depart.ville`, `statistiques.noteMoyenne`…) ; les listes sont
sérialisées en JSON dans leur cellule.
"""
import csv
import io
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from app.db.mongo import ANNONCES, DEMANDES, EVALUATIONS, USERS
from app.users.models import PRIVATE_FIELDS
from app.utils.errors import ValidationAppError
from app.utils.mongodb_utils import NOT_DELETED, serialize_document

EXPORT_COLLECTIONS = {
    "utilisateurs": USERS,
    "annonces": ANNONCES,
    "demandes": DEMANDES,
    "evaluations": EVALUATIONS,
}

EXPORT_FORMATS = ("json", "csv")


def flatten_document(document: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in document.items():
        column = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            flat.update(flatten_document(value, column))
        elif isinstance(value, list):
            flat[column] = json.dumps(value, ensure_ascii=False)
        else:
            flat[column] = value
    return flat


def to_csv(documents: Iterable[Dict[str, Any]]) -> str:
    rows = [flatten_document(serialize_document(doc)) for doc in documents]
    columns: List[str] = []
    for row in rows:
        for column in row:
            if column not in columns:
                columns.append(column)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({c: "" if row.get(c) is None else row[c] for c in columns})
    return buffer.getvalue()


def export_query(date_debut: Optional[datetime] = None, date_fin: Optional[datetime] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = dict(NOT_DELETED)
    if date_debut or date_fin:
        created: Dict[str, Any] = {}
        if date_debut:
            created["$gte"] = date_debut
        if date_fin:
            created["$lte"] = date_fin
        query["createdAt"] = created
    return query


async def fetch_export(db, type_export: str, date_debut: Optional[datetime] = None, date_fin: Optional[datetime] = None) -> List[Dict[str, Any]]:
    if type_export not in EXPORT_COLLECTIONS:
        raise ValidationAppError(
            f"Type d'export invalide (valeurs possibles : {', '.join(EXPORT_COLLECTIONS)})"
        )
    projection = {field: 0 for field in PRIVATE_FIELDS} if type_export == "utilisateurs" else None
    cursor = db[EXPORT_COLLECTIONS[type_export]].find(export_query(date_debut, date_fin), projection).sort("createdAt", -1)
    return [doc async for doc in cursor]
