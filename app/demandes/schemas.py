from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, validator

from app.annonces.models import Devise, TypeMarchandise
from app.demandes.models import ActionReponse, DecisionLitige, DemandeStatut, MethodePaiement, TypeCommunication


# ===========================
# COLIS / ADRESSES
# ===========================
class DimensionsColis(BaseModel):
    longueur: float = Field(..., ge=0.1)
    largeur: float = Field(..., ge=0.1)
    hauteur: float = Field(..., ge=0.1)


class Colis(BaseModel):
    description: Optional[str] = Field(None, max_length=500)
    dimensions: DimensionsColis
    poids: float = Field(..., ge=0.1)
    type: TypeMarchandise
    valeurDeclaree: Optional[float] = Field(None, ge=0)
    fragile: bool = False


class CreneauHoraire(BaseModel):
    debut: Optional[str] = None
    fin: Optional[str] = None


class Adresse(BaseModel):
    nom: str = Field(..., min_length=1)
    telephone: str = Field(..., min_length=6)
    adresse: str = Field(..., min_length=1)
    ville: str = Field(..., min_length=1)
    codePostal: Optional[str] = None
    instructions: Optional[str] = Field(None, max_length=200)
    creneauHoraire: Optional[CreneauHoraire] = None


class Adresses(BaseModel):
    enlevement: Adresse
    livraison: Adresse


class TarificationDemande(BaseModel):
    montantPropose: float = Field(..., ge=0)
    devise: Devise = Devise.MAD
    methodePaiement: MethodePaiement = MethodePaiement.ESPECES


# ===========================
# DEMANDES
# ===========================
class DemandeCreate(BaseModel):
    annonce: str
    colis: Colis
    adresses: Adresses
    tarification: TarificationDemande
    dateLivraisonPrevue: Optional[datetime] = None
    message: Optional[str] = Field(None, max_length=1000)


class ReponseDemande(BaseModel):
    action: ActionReponse
    message: Optional[str] = Field(None, max_length=500)
    montantAccepte: Optional[float] = Field(None, ge=0)


class StatutUpdate(BaseModel):
    statut: DemandeStatut
    commentaire: Optional[str] = Field(None, max_length=500)


class AnnulationDemande(BaseModel):
    motif: str = Field(..., min_length=10, max_length=500)


class LitigeCreate(BaseModel):
    motif: str = Field(..., min_length=10, max_length=500)


class ResolutionLitige(BaseModel):
    resolution: str = Field(..., min_length=10, max_length=1000)
    decision: DecisionLitige


class PositionUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    adresse: Optional[str] = None


class EtapeSuivi(BaseModel):
    lieu: str = Field(..., min_length=1)
    statut: str = Field(..., min_length=1)
    commentaire: Optional[str] = Field(None, max_length=500)


class CommunicationCreate(BaseModel):
    type: TypeCommunication = TypeCommunication.MESSAGE
    contenu: str = Field(..., min_length=1, max_length=1000)

    @validator('contenu')
    def strip_contenu(cls, v):
        if not v.strip():
            raise ValueError("Le contenu ne peut pas être vide")
        return v.strip()
