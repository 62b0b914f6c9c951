from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from app.utils.mongodb_utils import utcnow


# ────────────────────────────────
# ÉNUMÉRATIONS
# ────────────────────────────────

class UserRole(str, Enum):
    ADMIN = "admin"
    CONDUCTEUR = "conducteur"
    EXPEDITEUR = "expediteur"


class UserStatus(str, Enum):
    ACTIF = "actif"
    SUSPENDU = "suspendu"
    EN_ATTENTE = "en_attente"


class BadgeType(str, Enum):
    VERIFIE = "verifie"
    CONDUCTEUR_EXPERIMENTE = "conducteur_experimente"
    EXPEDITEUR_FIABLE = "expediteur_fiable"


class ModerationAction(str, Enum):
    CHANGEMENT_STATUT = "changement_statut"
    AJOUT_BADGE = "ajout_badge"
    RETRAIT_BADGE = "retrait_badge"


# Champs jamais exposés par l'API
PRIVATE_FIELDS = {"motDePasse", "tokenVerificationEmail", "tokenResetMotDePasse", "tentativesConnexion"}
# Champs réservés au propriétaire et aux admins
CONTACT_FIELDS = {"email", "telephone", "adresse", "preferences", "moderationHistorique"}


# ────────────────────────────────
# DOCUMENT UTILISATEUR
# ────────────────────────────────

def new_user_document(data: Dict[str, Any], hashed_password: str, role: str, statut: str = UserStatus.ACTIF.value) -> Dict[str, Any]:
    now = utcnow()
    adresse = data.get("adresse") or {}
    adresse.setdefault("pays", "Maroc")
    return {
        "nom": data["nom"],
        "prenom": data["prenom"],
        "email": data["email"].lower(),
        "telephone": data.get("telephone"),
        "motDePasse": hashed_password,
        "role": role,
        "statut": statut,
        "badges": [],
        "photo": None,
        "adresse": adresse,
        "preferences": data.get("preferences") or {"notifications": {"email": True}, "langue": "fr"},
        "statistiques": {
            "nombreAnnonces": 0,
            "nombreDemandesEnvoyees": 0,
            "nombreDemandesAcceptees": 0,
            "noteMoyenne": 0,
            "nombreEvaluations": 0,
        },
        "moderationHistorique": [],
        "derniereConnexion": None,
        "emailVerifie": False,
        "tentativesConnexion": {"nombre": 0, "bloqueJusqu": None},
        "supprime": False,
        "dateSuppression": None,
        "supprimePar": None,
        "createdAt": now,
        "updatedAt": now,
    }


def nom_complet(user: Dict[str, Any]) -> str:
    return f"{user.get('prenom', '')} {user.get('nom', '')}".strip()


def is_locked(user: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Compte bloqué après trop d'échecs de connexion, jusqu'à expiration du blocage"""
    bloque_jusqu = (user.get("tentativesConnexion") or {}).get("bloqueJusqu")
    return bool(bloque_jusqu and bloque_jusqu > (now or utcnow()))


def public_user(user: Dict[str, Any], include_private: bool = False) -> Dict[str, Any]:
    """Vue publique d'un document utilisateur (sans secrets, contact masqué sauf propriétaire/admin)"""
    if not user:
        return user
    hidden = PRIVATE_FIELDS if include_private else PRIVATE_FIELDS | CONTACT_FIELDS
    view = {key: value for key, value in user.items() if key not in hidden}
    view["nomComplet"] = nom_complet(user)
    return view


def user_summary(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Version légère, utilisée pour peupler les références (conducteur, expéditeur…)"""
    if not user:
        return None
    stats = user.get("statistiques") or {}
    return {
        "_id": user["_id"],
        "nom": user.get("nom"),
        "prenom": user.get("prenom"),
        "photo": user.get("photo"),
        "role": user.get("role"),
        "noteMoyenne": stats.get("noteMoyenne", 0),
        "nombreEvaluations": stats.get("nombreEvaluations", 0),
        "badges": user.get("badges", []),
    }


def anonymized_fields(user_id) -> Dict[str, Any]:
    """Champs écrits lors de la suppression logique d'un compte"""
    return {
        "nom": "Utilisateur",
        "prenom": "Supprimé",
        "email": f"deleted_{user_id}@transportconnect.invalid",
        "telephone": None,
        "photo": None,
        "adresse": {},
        "preferences": {},
        "statut": UserStatus.SUSPENDU.value,
        "tokenVerificationEmail": None,
        "tokenResetMotDePasse": None,
    }
