"""
Machine d'états des demandes de transport

  en_attente ──accepter──> acceptee ──> en_cours ──> enlevee ──> en_transit ──> livree
      │                       │            │            │            │
      ├──refuser──> refusee   │            │            │            │
      └──────────────> annulee / litige (depuis tout état non terminal)

INVARIANTS :
- chaque écriture de statut ajoute exactement une entrée à l'historique
- livree, refusee, annulee sont terminaux ; litige l'est jusqu'à sa résolution
- le numéro de suivi est attribué une seule fois, à la première entrée en acceptee
"""

import logging
from typing import Dict, List

from app.demandes.models import DemandeStatut, DecisionLitige
from app.utils.errors import BusinessRuleError

logger = logging.getLogger(__name__)

S = DemandeStatut

# ════════════════════════════════════════════════════════════════════════════
# TRANSITIONS VALIDES
# ════════════════════════════════════════════════════════════════════════════

VALID_DEMANDE_TRANSITIONS: Dict[str, List[str]] = {
    S.EN_ATTENTE.value: [S.ACCEPTEE.value, S.REFUSEE.value, S.ANNULEE.value, S.LITIGE.value],
    S.ACCEPTEE.value: [S.EN_COURS.value, S.ENLEVEE.value, S.EN_TRANSIT.value, S.LIVREE.value, S.ANNULEE.value, S.LITIGE.value],
    S.EN_COURS.value: [S.ENLEVEE.value, S.EN_TRANSIT.value, S.LIVREE.value, S.ANNULEE.value, S.LITIGE.value],
    S.ENLEVEE.value: [S.EN_TRANSIT.value, S.LIVREE.value, S.ANNULEE.value, S.LITIGE.value],
    S.EN_TRANSIT.value: [S.LIVREE.value, S.ANNULEE.value, S.LITIGE.value],
    S.LIVREE.value: [],  # TERMINAL
    S.REFUSEE.value: [],  # TERMINAL
    S.ANNULEE.value: [],  # TERMINAL
    S.LITIGE.value: [S.ANNULEE.value, S.LIVREE.value],  # uniquement par résolution admin
}

# Progression pilotée par le conducteur (PUT /statut)
CONDUCTEUR_TRANSITIONS: Dict[str, List[str]] = {
    S.ACCEPTEE.value: [S.EN_COURS.value, S.ENLEVEE.value, S.EN_TRANSIT.value, S.LIVREE.value, S.ANNULEE.value],
    S.EN_COURS.value: [S.ENLEVEE.value, S.EN_TRANSIT.value, S.LIVREE.value, S.ANNULEE.value],
    S.ENLEVEE.value: [S.EN_TRANSIT.value, S.LIVREE.value],
    S.EN_TRANSIT.value: [S.LIVREE.value],
}

# Annulation par l'expéditeur
STATUTS_ANNULABLES = [S.EN_ATTENTE.value, S.ACCEPTEE.value]

# Position GPS modifiable
STATUTS_SUIVI_POSITION = [S.ENLEVEE.value, S.EN_TRANSIT.value]

TERMINAL_STATUTS = [S.LIVREE.value, S.REFUSEE.value, S.ANNULEE.value]

# Champ de date horodaté lors de l'entrée dans un statut
STATUT_DATE_FIELDS: Dict[str, str] = {
    S.ACCEPTEE.value: "dates.dateReponse",
    S.REFUSEE.value: "dates.dateReponse",
    S.ENLEVEE.value: "dates.dateEnlevement",
    S.LIVREE.value: "dates.dateLivraisonReelle",
}

# Décision de litige -> statut final (None : statut inchangé)
DECISION_STATUTS: Dict[str, object] = {
    DecisionLitige.FAVEUR_EXPEDITEUR.value: S.ANNULEE.value,
    DecisionLitige.FAVEUR_CONDUCTEUR.value: S.LIVREE.value,
    DecisionLitige.PARTAGE.value: None,
}


# ════════════════════════════════════════════════════════════════════════════
# VÉRIFICATIONS
# ════════════════════════════════════════════════════════════════════════════

class DemandeTransitionError(BusinessRuleError):
    """Transition de statut interdite"""
    pass


def validate_transition(from_statut: str, to_statut: str, table: Dict[str, List[str]] = None) -> bool:
    """
    Vérifie qu'une transition est autorisée, lève DemandeTransitionError sinon.
    """
    table = table or VALID_DEMANDE_TRANSITIONS
    allowed = table.get(from_statut, [])
    if to_statut not in allowed:
        logger.warning(f"⚠️ Transition refusée : {from_statut} -> {to_statut}")
        raise DemandeTransitionError(
            f"Transition de '{from_statut}' vers '{to_statut}' non autorisée"
        )
    return True


def peut_etre_annulee(statut: str) -> bool:
    return statut in STATUTS_ANNULABLES


def is_terminal(statut: str) -> bool:
    return statut in TERMINAL_STATUTS
