import secrets
import string
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from app.utils.mongodb_utils import utcnow


# ===========================
# ENUMS
# ===========================
class DemandeStatut(str, Enum):
    EN_ATTENTE = "en_attente"
    ACCEPTEE = "acceptee"
    REFUSEE = "refusee"
    EN_COURS = "en_cours"
    ENLEVEE = "enlevee"
    EN_TRANSIT = "en_transit"
    LIVREE = "livree"
    ANNULEE = "annulee"
    LITIGE = "litige"


class MethodePaiement(str, Enum):
    ESPECES = "especes"
    VIREMENT = "virement"
    PAYPAL = "paypal"
    CARTE_BANCAIRE = "carte_bancaire"


class ActionReponse(str, Enum):
    ACCEPTER = "accepter"
    REFUSER = "refuser"


class DecisionLitige(str, Enum):
    FAVEUR_EXPEDITEUR = "faveur_expediteur"
    FAVEUR_CONDUCTEUR = "faveur_conducteur"
    PARTAGE = "partage"


class TypeCommunication(str, Enum):
    MESSAGE = "message"
    APPEL = "appel"
    SMS = "sms"


# Statuts d'une transaction en cours (bloquent suppression d'annonce / de compte)
STATUTS_ACTIFS = [
    DemandeStatut.ACCEPTEE.value,
    DemandeStatut.EN_COURS.value,
    DemandeStatut.ENLEVEE.value,
    DemandeStatut.EN_TRANSIT.value,
]

# Une seule demande « vivante » par expéditeur et par annonce
STATUTS_NON_CLOS = [DemandeStatut.EN_ATTENTE.value] + STATUTS_ACTIFS


# ===========================
# NUMÉRO DE SUIVI
# ===========================
BASE36_ALPHABET = string.digits + string.ascii_uppercase


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generer_numero_suivi(timestamp_ms: Optional[int] = None) -> str:
    """'TC' + horodatage en base 36 + 4 caractères aléatoires, en majuscules"""
    timestamp_ms = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
    suffixe = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(4))
    return f"TC{to_base36(timestamp_ms)}{suffixe}"


# ===========================
# CHAMPS VIRTUELS
# ===========================
def est_active(demande: Dict[str, Any]) -> bool:
    return demande.get("statut") in STATUTS_ACTIFS


def en_retard(demande: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    prevue = (demande.get("dates") or {}).get("dateLivraisonPrevue")
    if not prevue or demande.get("statut") == DemandeStatut.LIVREE.value:
        return False
    return prevue < (now or utcnow())


def with_virtuals(demande: Dict[str, Any]) -> Dict[str, Any]:
    demande["estActive"] = est_active(demande)
    demande["enRetard"] = en_retard(demande)
    return demande


def history_entry(statut: str, commentaire: Optional[str] = None, auteur=None, date: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "statut": statut,
        "date": date or utcnow(),
        "commentaire": commentaire,
        "auteur": auteur,
    }


def tracking_view(demande: Dict[str, Any], annonce: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Vue publique réduite pour le suivi par numéro"""
    suivi = demande.get("suivi") or {}
    trajet = (annonce or {}).get("trajet") or {}
    return {
        "numeroSuivi": suivi.get("numeroSuivi"),
        "statut": demande.get("statut"),
        "dates": demande.get("dates") or {},
        "positionActuelle": suivi.get("positionActuelle"),
        "etapes": suivi.get("etapes", []),
        "colis": demande.get("colis"),
        "trajet": {
            "depart": (trajet.get("depart") or {}).get("ville"),
            "destination": (trajet.get("destination") or {}).get("ville"),
        },
    }
