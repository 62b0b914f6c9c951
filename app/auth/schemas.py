from pydantic import BaseModel, EmailStr, Field, validator
from typing import Optional

from app.users.models import UserRole


class AdresseIn(BaseModel):
    rue: Optional[str] = None
    ville: Optional[str] = None
    codePostal: Optional[str] = None
    pays: Optional[str] = "Maroc"


class UserRegister(BaseModel):
    nom: str = Field(..., min_length=1, max_length=50)
    prenom: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    telephone: str
    motDePasse: str = Field(..., min_length=6)
    confirmMotDePasse: Optional[str] = None
    role: UserRole = UserRole.EXPEDITEUR
    adresse: Optional[AdresseIn] = None

    @validator('confirmMotDePasse')
    def passwords_match(cls, v, values, **kwargs):
        if v is not None and 'motDePasse' in values and v != values['motDePasse']:
            raise ValueError('Les mots de passe ne correspondent pas')
        return v

    @validator('telephone')
    def validate_phone_format(cls, v):
        cleaned = v.replace(' ', '').replace('-', '')
        if cleaned.startswith('+'):
            cleaned = cleaned[1:]
        if not cleaned.isdigit() or len(cleaned) < 8:
            raise ValueError('Format de téléphone invalide')
        return v

    @validator('role')
    def no_admin_self_registration(cls, v):
        if v == UserRole.ADMIN:
            raise ValueError("Rôle non autorisé à l'inscription")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    motDePasse: str

    @validator('motDePasse')
    def password_required(cls, v):
        if not v:
            raise ValueError("Mot de passe requis")
        return v


class RefreshTokenRequest(BaseModel):
    refreshToken: str


class ChangePasswordRequest(BaseModel):
    ancienMotDePasse: str
    nouveauMotDePasse: str = Field(..., min_length=6)

    @validator('nouveauMotDePasse')
    def different_password(cls, v, values):
        if v == values.get('ancienMotDePasse'):
            raise ValueError("Le nouveau mot de passe doit être différent de l'ancien")
        return v


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    nouveauMotDePasse: str = Field(..., min_length=6)
    confirmMotDePasse: str

    @validator('confirmMotDePasse')
    def passwords_match(cls, v, values):
        if v != values.get('nouveauMotDePasse'):
            raise ValueError('Les mots de passe ne correspondent pas')
        return v


class AdminCreate(BaseModel):
    nom: str = Field(..., min_length=1, max_length=50)
    prenom: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    telephone: str
    motDePasse: str = Field(..., min_length=8)
