from typing import List, Optional

from pydantic import BaseModel, Field, validator

from app.messages.models import MessageType, Priorite, REACTIONS_AUTORISEES


class Localisation(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    adresse: Optional[str] = None


class Fichier(BaseModel):
    nom: str
    url: str
    type: Optional[str] = None
    taille: Optional[int] = Field(None, ge=0)


class MessageCreate(BaseModel):
    destinataire: str
    annonce: str
    demande: Optional[str] = None
    contenu: Optional[str] = Field(None, max_length=1000)
    type: MessageType = MessageType.TEXTE
    fichiers: List[Fichier] = Field(default_factory=list)
    localisation: Optional[Localisation] = None
    reponseA: Optional[str] = None
    mentions: List[str] = Field(default_factory=list)
    priorite: Priorite = Priorite.NORMALE

    @validator('type')
    def no_client_system_messages(cls, v):
        if v == MessageType.SYSTEME:
            raise ValueError("Les messages système ne peuvent pas être envoyés par un utilisateur")
        return v

    @validator('localisation', always=True)
    def payload_matches_type(cls, v, values):
        kind = values.get('type')
        if kind == MessageType.LOCALISATION and v is None:
            raise ValueError("Une localisation est requise pour un message de type localisation")
        if kind == MessageType.TEXTE and not (values.get('contenu') or '').strip():
            raise ValueError("Le contenu du message est requis")
        if kind in (MessageType.IMAGE, MessageType.DOCUMENT) and not values.get('fichiers'):
            raise ValueError("Au moins un fichier est requis")
        return v


class ReactionCreate(BaseModel):
    emoji: str

    @validator('emoji')
    def emoji_allowed(cls, v):
        if v not in REACTIONS_AUTORISEES:
            raise ValueError(f"Réaction non autorisée (valeurs possibles : {' '.join(REACTIONS_AUTORISEES)})")
        return v
