from enum import Enum
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# ────────────────────────────────
# ÉNUMÉRATIONS
# ────────────────────────────────

class MessageType(str, Enum):
    TEXTE = "texte"
    IMAGE = "image"
    DOCUMENT = "document"
    LOCALISATION = "localisation"
    SYSTEME = "systeme"


class MessageStatut(str, Enum):
    ENVOYE = "envoye"
    LIVRE = "livre"
    LU = "lu"
    ECHEC = "echec"


class Priorite(str, Enum):
    NORMALE = "normale"
    HAUTE = "haute"
    URGENTE = "urgente"


REACTIONS_AUTORISEES = ["👍", "👎", "❤️", "😂", "😮", "😢", "😡"]


def conversation_id(expediteur_id, destinataire_id, annonce_id) -> str:
    """Identifiant indépendant de l'initiateur : les deux parties tombent dans la même salle"""
    return "_".join(sorted([str(expediteur_id), str(destinataire_id), str(annonce_id)]))


# ────────────────────────────────
# MESSAGES SYSTÈME (union étiquetée)
# ────────────────────────────────

class DemandeEnvoyee(BaseModel):
    type: Literal["demande_envoyee"] = "demande_envoyee"
    demandeId: str


class DemandeAcceptee(BaseModel):
    type: Literal["demande_acceptee"] = "demande_acceptee"
    demandeId: str
    numeroSuivi: str


class DemandeRefusee(BaseModel):
    type: Literal["demande_refusee"] = "demande_refusee"
    demandeId: str
    motif: Optional[str] = None


class ColisEnleve(BaseModel):
    type: Literal["colis_enleve"] = "colis_enleve"
    demandeId: str
    numeroSuivi: Optional[str] = None


class ColisEnTransit(BaseModel):
    type: Literal["colis_en_transit"] = "colis_en_transit"
    demandeId: str
    numeroSuivi: Optional[str] = None


class ColisLivre(BaseModel):
    type: Literal["colis_livre"] = "colis_livre"
    demandeId: str
    numeroSuivi: Optional[str] = None


class EvaluationDemandee(BaseModel):
    type: Literal["evaluation_demandee"] = "evaluation_demandee"
    demandeId: str


class LitigeSignale(BaseModel):
    type: Literal["litige_signale"] = "litige_signale"
    demandeId: str
    motif: str


class ConversationArchivee(BaseModel):
    type: Literal["conversation_archivee"] = "conversation_archivee"


SystemMessage = Annotated[
    Union[
        DemandeEnvoyee, DemandeAcceptee, DemandeRefusee,
        ColisEnleve, ColisEnTransit, ColisLivre,
        EvaluationDemandee, LitigeSignale, ConversationArchivee,
    ],
    Field(discriminator="type"),
]


system_message_adapter = TypeAdapter(SystemMessage)


SYSTEM_MESSAGE_TEXTS: Dict[str, str] = {
    "demande_envoyee": "Nouvelle demande de transport envoyée.",
    "demande_acceptee": "Demande acceptée. Numéro de suivi : {numeroSuivi}",
    "demande_refusee": "Demande refusée.",
    "colis_enleve": "Le colis a été enlevé.",
    "colis_en_transit": "Le colis est en transit.",
    "colis_livre": "Le colis a été livré.",
    "evaluation_demandee": "Transport terminé : vous pouvez maintenant laisser une évaluation.",
    "litige_signale": "Un litige a été signalé : {motif}",
    "conversation_archivee": "Conversation archivée.",
}


def system_message_text(payload: BaseModel) -> str:
    data = payload.model_dump()
    return SYSTEM_MESSAGE_TEXTS[data["type"]].format(**data)

