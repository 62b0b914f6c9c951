"""
Fabriques de documents pour les tests (base Motor en mémoire)
"""
from datetime import timedelta
from typing import Any, Dict

from bson import ObjectId

from app.auth.password import hash_password
from app.auth.services import issue_tokens
from app.db.mongo import DEMANDES, USERS
from app.users.models import new_user_document
from app.utils.mongodb_utils import utcnow

PASSWORD = "motdepasse123"
_HASH = hash_password(PASSWORD)


async def create_user(db, role: str = "expediteur", **overrides) -> Dict[str, Any]:
    data = {
        "nom": overrides.pop("nom", "Alaoui"),
        "prenom": overrides.pop("prenom", "Karim"),
        "email": overrides.pop("email", f"{role}.{ObjectId()}@example.ma"),
        "telephone": "+212600000000",
        "adresse": {"ville": overrides.pop("ville", "Casablanca")},
    }
    document = new_user_document(data, _HASH, role)
    document.update(overrides)
    result = await db[USERS].insert_one(document)
    document["_id"] = result.inserted_id
    return document


def auth_headers(user: Dict[str, Any]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_tokens(user)['token']}"}


def annonce_data(**overrides) -> Dict[str, Any]:
    """Données d'annonce telles que produites par AnnonceCreate"""
    data = {
        "titre": "Casablanca vers Rabat",
        "description": "Trajet quotidien, départ tôt le matin",
        "trajet": {
            "depart": {"ville": "Casablanca", "adresse": "Bd Zerktouni"},
            "destination": {"ville": "Rabat", "adresse": "Agdal"},
            "distance": 87,
            "dureeEstimee": 2,
        },
        "planning": {"dateDepart": utcnow() + timedelta(days=3)},
        "capacite": {
            "poidsMax": 50,
            "dimensionsMax": {"longueur": 100, "largeur": 80, "hauteur": 60},
        },
        "typesMarchandise": ["electronique", "vetements", "documents"],
        "tarification": {"typeTarification": "par_kg", "prixParKg": 10, "deviseAcceptee": "MAD"},
    }
    data.update(overrides)
    return data


def demande_data(annonce_id, **overrides) -> Dict[str, Any]:
    """Données de demande telles que produites par DemandeCreate"""
    data = {
        "annonce": str(annonce_id),
        "colis": {
            "description": "Ordinateur portable emballé",
            "poids": 5,
            "dimensions": {"longueur": 30, "largeur": 20, "hauteur": 10},
            "type": "electronique",
            "fragile": True,
        },
        "adresses": {
            "enlevement": {"nom": "Karim Alaoui", "telephone": "+212600000001", "adresse": "12 rue Allal", "ville": "Casablanca"},
            "livraison": {"nom": "Samira Bennani", "telephone": "+212600000002", "adresse": "5 avenue Fal Ould Oumeir", "ville": "Rabat"},
        },
        "tarification": {"montantPropose": 60, "methodePaiement": "especes"},
    }
    data.update(overrides)
    return data


async def insert_demande(db, expediteur, conducteur, statut: str = "livree", **overrides) -> Dict[str, Any]:
    """Insère directement une demande dans un statut donné"""
    now = utcnow()
    document = {
        "annonce": ObjectId(),
        "expediteur": expediteur["_id"],
        "conducteur": conducteur["_id"],
        "colis": {"poids": 5, "dimensions": {"longueur": 30, "largeur": 20, "hauteur": 10}, "volume": 6000},
        "tarification": {"montantPropose": 60, "montantAccepte": 60},
        "statut": statut,
        "historique": [{"statut": statut, "date": now, "commentaire": None, "auteur": None}],
        "suivi": {"positionActuelle": None, "etapes": []},
        "dates": {"dateCreation": now},
        "evaluation": {"expediteurVersConducteur": None, "conducteurVersExpediteur": None},
        "litige": {"signale": False, "resolu": False},
        "supprime": False,
        "createdAt": now,
        "updatedAt": now,
    }
    document.update(overrides)
    result = await db[DEMANDES].insert_one(document)
    document["_id"] = result.inserted_id
    return document
