from typing import List, Optional

from pydantic import BaseModel, Field, validator

from app.evaluations.models import ActionModeration, Avantage, DecisionSignalement, Inconvenient, MotifSignalement


class Criteres(BaseModel):
    ponctualite: int = Field(..., ge=1, le=5)
    communication: int = Field(..., ge=1, le=5)
    professionnalisme: int = Field(..., ge=1, le=5)
    respectConsignes: int = Field(..., ge=1, le=5)
    soinMarchandise: Optional[int] = Field(None, ge=1, le=5)
    qualiteEmballage: Optional[int] = Field(None, ge=1, le=5)


class EvaluationCreate(BaseModel):
    demande: str
    criteres: Criteres
    commentaire: str = Field(..., min_length=10, max_length=500)
    recommande: bool
    avantages: List[Avantage] = Field(default_factory=list)
    inconvenients: List[Inconvenient] = Field(default_factory=list)


class EvaluationUpdate(BaseModel):
    criteres: Optional[Criteres] = None
    commentaire: Optional[str] = Field(None, min_length=10, max_length=500)
    recommande: Optional[bool] = None
    avantages: Optional[List[Avantage]] = None
    inconvenients: Optional[List[Inconvenient]] = None


class ReponseEvaluation(BaseModel):
    commentaire: str = Field(..., min_length=10, max_length=300)


class SignalementCreate(BaseModel):
    motif: MotifSignalement
    details: Optional[str] = Field(None, max_length=500)


class ModerationRequest(BaseModel):
    action: ActionModeration
    raisonRejet: Optional[str] = Field(None, min_length=10, max_length=500)
    decision: Optional[DecisionSignalement] = None

    @validator('decision', always=True)
    def decision_required(cls, v, values):
        action = values.get('action')
        if action == ActionModeration.TRAITER_SIGNALEMENT and v is None:
            raise ValueError("Une décision est requise pour traiter un signalement")
        if action == ActionModeration.REJETER and not values.get('raisonRejet'):
            raise ValueError("La raison du rejet est requise")
        return v
