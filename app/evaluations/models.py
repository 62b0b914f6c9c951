from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class TypeEvaluation(str, Enum):
    EXPEDITEUR_VERS_CONDUCTEUR = "expediteur_vers_conducteur"
    CONDUCTEUR_VERS_EXPEDITEUR = "conducteur_vers_expediteur"


class Avantage(str, Enum):
    PONCTUEL = "ponctuel"
    COMMUNICATIF = "communicatif"
    PROFESSIONNEL = "professionnel"
    SOIGNEUX = "soigneux"
    FLEXIBLE = "flexible"
    AIMABLE = "aimable"
    EFFICACE = "efficace"
    FIABLE = "fiable"
    PRIX_CORRECT = "prix_correct"
    VEHICULE_PROPRE = "vehicule_propre"
    EMBALLAGE_SOIGNE = "emballage_soigne"
    DESCRIPTION_EXACTE = "description_exacte"
    DISPONIBLE = "disponible"


class Inconvenient(str, Enum):
    RETARD = "retard"
    MAUVAISE_COMMUNICATION = "mauvaise_communication"
    NON_PROFESSIONNEL = "non_professionnel"
    MARCHANDISE_ABIMEE = "marchandise_abimee"
    VEHICULE_SALE = "vehicule_sale"
    PRIX_ELEVE = "prix_eleve"
    PEU_FLEXIBLE = "peu_flexible"
    EMBALLAGE_INSUFFISANT = "emballage_insuffisant"
    DESCRIPTION_INEXACTE = "description_inexacte"
    INDISPONIBLE = "indisponible"


class MotifSignalement(str, Enum):
    COMMENTAIRE_INAPPROPRIE = "commentaire_inapproprie"
    NOTE_INJUSTIFIEE = "note_injustifiee"
    FAUX_COMMENTAIRE = "faux_commentaire"
    INFORMATION_PERSONNELLE = "information_personnelle"
    DIFFAMATION = "diffamation"
    AUTRE = "autre"


class ActionModeration(str, Enum):
    APPROUVER = "approuver"
    REJETER = "rejeter"
    TRAITER_SIGNALEMENT = "traiter_signalement"


class DecisionSignalement(str, Enum):
    MAINTENUE = "maintenue"
    MODIFIEE = "modifiee"
    SUPPRIMEE = "supprimee"


CRITERES_COMMUNS = ["ponctualite", "communication", "professionnalisme", "respectConsignes"]

CRITERE_SPECIFIQUE = {
    TypeEvaluation.EXPEDITEUR_VERS_CONDUCTEUR.value: "soinMarchandise",
    TypeEvaluation.CONDUCTEUR_VERS_EXPEDITEUR.value: "qualiteEmballage",
}

# Direction -> champ de la demande qui référence l'évaluation
DEMANDE_SLOTS = {
    TypeEvaluation.EXPEDITEUR_VERS_CONDUCTEUR.value: "expediteurVersConducteur",
    TypeEvaluation.CONDUCTEUR_VERS_EXPEDITEUR.value: "conducteurVersExpediteur",
}


def arrondir_demi(valeur: float) -> float:
    """Arrondi au demi-point le plus proche (4.25 -> 4.5, 4.2 -> 4.0)"""
    return int(valeur * 2 + 0.5) / 2


def criteres_requis(type_evaluation: str) -> List[str]:
    return CRITERES_COMMUNS + [CRITERE_SPECIFIQUE[type_evaluation]]


def criteres_manquants(type_evaluation: str, criteres: Dict[str, Any]) -> List[str]:
    return [c for c in criteres_requis(type_evaluation) if criteres.get(c) is None]


def calculer_note(criteres: Dict[str, Any]) -> float:
    """note = moyenne des sous-critères présents, arrondie au demi-point"""
    valeurs = [v for v in criteres.values() if v is not None]
    if not valeurs:
        return 0
    return arrondir_demi(sum(valeurs) / len(valeurs))


def moyenne_notes(notes: Iterable[float]) -> float:
    notes = list(notes)
    if not notes:
        return 0
    return arrondir_demi(sum(notes) / len(notes))


def type_pour_evaluateur(demande: Dict[str, Any], evaluateur_id) -> Optional[str]:
    if evaluateur_id == demande.get("expediteur"):
        return TypeEvaluation.EXPEDITEUR_VERS_CONDUCTEUR.value
    if evaluateur_id == demande.get("conducteur"):
        return TypeEvaluation.CONDUCTEUR_VERS_EXPEDITEUR.value
    return None


def autre_partie(demande: Dict[str, Any], evaluateur_id):
    return demande["conducteur"] if evaluateur_id == demande["expediteur"] else demande["expediteur"]


def est_visible(evaluation: Dict[str, Any], viewer: Optional[Dict[str, Any]]) -> bool:
    """Une évaluation non approuvée n'est visible que des deux parties et des admins"""
    if (evaluation.get("moderationAdmin") or {}).get("approuvee", True):
        return True
    if not viewer:
        return False
    return viewer.get("role") == "admin" or viewer["_id"] in (evaluation.get("evaluateur"), evaluation.get("evalue"))
