from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, validator

from app.utils.mongodb_utils import normalize_datetime, utcnow
from app.annonces.models import (
    AnnonceStatut, Devise, Flexibilite, TypeMarchandise, TypeTarification, TypeVehicule,
)


# ===========================
# TRAJET / PLANNING / CAPACITÉ
# ===========================
class Coordonnees(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Lieu(BaseModel):
    ville: str = Field(..., min_length=1, max_length=100)
    adresse: Optional[str] = None
    codePostal: Optional[str] = None
    coordonnees: Optional[Coordonnees] = None


class EtapeIntermediaire(BaseModel):
    ville: str = Field(..., min_length=1)
    ordre: int = Field(..., ge=1)


class Trajet(BaseModel):
    depart: Lieu
    destination: Lieu
    etapesIntermediaires: List[EtapeIntermediaire] = Field(default_factory=list)
    distance: Optional[float] = Field(None, ge=0)
    dureeEstimee: Optional[float] = Field(None, ge=0, description="Durée estimée en heures")


class Planning(BaseModel):
    dateDepart: datetime
    dateArriveeEstimee: Optional[datetime] = None
    flexibilite: Flexibilite = Flexibilite.EXACTE

    @validator('dateDepart')
    def validate_date(cls, v):
        if normalize_datetime(v) <= utcnow():
            raise ValueError("La date de départ doit être dans le futur")
        return v


class Dimensions(BaseModel):
    longueur: float = Field(..., gt=0)
    largeur: float = Field(..., gt=0)
    hauteur: float = Field(..., gt=0)


class Capacite(BaseModel):
    dimensionsMax: Dimensions
    poidsMax: float = Field(..., gt=0)
    nombreColisMax: int = Field(default=1, ge=1)


class Restrictions(BaseModel):
    interdits: List[str] = Field(default_factory=list)
    exigences: List[str] = Field(default_factory=list)


class Tarification(BaseModel):
    typeTarification: TypeTarification
    prixParKg: Optional[float] = Field(None, ge=0)
    prixFixe: Optional[float] = Field(None, ge=0)
    deviseAcceptee: Devise = Devise.MAD

    @validator('prixFixe', always=True)
    def price_matches_mode(cls, v, values):
        mode = values.get('typeTarification')
        if mode == TypeTarification.PAR_KG and values.get('prixParKg') is None:
            raise ValueError("prixParKg est requis pour une tarification au kilo")
        if mode == TypeTarification.PRIX_FIXE and v is None:
            raise ValueError("prixFixe est requis pour une tarification à prix fixe")
        return v


class Vehicule(BaseModel):
    type: TypeVehicule
    marque: Optional[str] = None
    modele: Optional[str] = None
    immatriculation: Optional[str] = None


class Conditions(BaseModel):
    paiementAccepte: List[str] = Field(default_factory=lambda: ["especes"])
    assuranceIncluse: bool = False
    suiviGPS: bool = False


# ===========================
# ANNONCES
# ===========================
class AnnonceCreate(BaseModel):
    titre: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    trajet: Trajet
    planning: Planning
    capacite: Capacite
    typesMarchandise: List[TypeMarchandise] = Field(default_factory=list)
    restrictions: Optional[Restrictions] = None
    tarification: Tarification
    vehicule: Optional[Vehicule] = None
    conditions: Optional[Conditions] = None


class AnnonceUpdate(BaseModel):
    titre: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    trajet: Optional[Trajet] = None
    planning: Optional[Planning] = None
    capacite: Optional[Capacite] = None
    typesMarchandise: Optional[List[TypeMarchandise]] = None
    restrictions: Optional[Restrictions] = None
    tarification: Optional[Tarification] = None
    vehicule: Optional[Vehicule] = None
    conditions: Optional[Conditions] = None
    statut: Optional[AnnonceStatut] = None


class AnnonceFilters(BaseModel):
    villeDepart: Optional[str] = None
    villeDestination: Optional[str] = None
    dateMin: Optional[datetime] = None
    dateMax: Optional[datetime] = None
    prixMin: Optional[float] = None
    prixMax: Optional[float] = None
    typesMarchandise: Optional[List[str]] = None
    statut: Optional[str] = AnnonceStatut.ACTIVE.value
    conducteur: Optional[str] = None


class ColisRecherche(BaseModel):
    poids: Optional[float] = Field(None, gt=0)
    longueur: Optional[float] = Field(None, gt=0)
    largeur: Optional[float] = Field(None, gt=0)
    hauteur: Optional[float] = Field(None, gt=0)
    typeMarchandise: Optional[TypeMarchandise] = None


# ===========================
# COMMENTAIRES
# ===========================
class CommentaireCreate(BaseModel):
    message: str = Field(..., min_length=10, max_length=500)


class ReponseCommentaireCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=500)
