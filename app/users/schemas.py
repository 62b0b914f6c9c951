from typing import Optional

from pydantic import BaseModel, Field, validator

from app.auth.schemas import AdresseIn

CONFIRMATION_SUPPRESSION = "SUPPRIMER MON COMPTE"


class NotificationPreferences(BaseModel):
    email: bool = True
    sms: bool = False
    push: bool = True


class PreferencesIn(BaseModel):
    notifications: Optional[NotificationPreferences] = None
    langue: Optional[str] = Field(None, pattern="^(fr|ar|en)$")


class ProfileUpdate(BaseModel):
    nom: Optional[str] = Field(None, min_length=1, max_length=50)
    prenom: Optional[str] = Field(None, min_length=1, max_length=50)
    telephone: Optional[str] = None
    photo: Optional[str] = None
    adresse: Optional[AdresseIn] = None
    preferences: Optional[PreferencesIn] = None

    @validator('telephone')
    def validate_phone_format(cls, v):
        if v is None:
            return v
        cleaned = v.replace(' ', '').replace('-', '')
        if cleaned.startswith('+'):
            cleaned = cleaned[1:]
        if not cleaned.isdigit() or len(cleaned) < 8:
            raise ValueError('Format de téléphone invalide')
        return v


class SuppressionCompte(BaseModel):
    motDePasse: str
    confirmation: str

    @validator('confirmation')
    def confirmation_exacte(cls, v):
        if v != CONFIRMATION_SUPPRESSION:
            raise ValueError(f'Veuillez saisir "{CONFIRMATION_SUPPRESSION}" pour confirmer')
        return v
