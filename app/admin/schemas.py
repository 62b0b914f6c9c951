from typing import Optional

from pydantic import BaseModel, Field

from app.annonces.models import AnnonceStatut
from app.users.models import BadgeType, UserStatus


class StatutUtilisateurUpdate(BaseModel):
    statut: UserStatus
    raison: Optional[str] = Field(None, max_length=500)


class BadgeUpdate(BaseModel):
    action: str = Field(..., pattern="^(ajouter|retirer)$")
    badge: BadgeType


class StatutAnnonceUpdate(BaseModel):
    statut: AnnonceStatut
    raison: Optional[str] = Field(None, max_length=500)
