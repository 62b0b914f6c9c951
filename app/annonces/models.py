from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional


# ===========================
# ENUMS
# ===========================
class AnnonceStatut(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    COMPLETE = "complete"
    ANNULEE = "annulee"
    SUSPENDUE = "suspendue"


class TypeMarchandise(str, Enum):
    ELECTRONIQUE = "electronique"
    VETEMENTS = "vetements"
    ALIMENTAIRE = "alimentaire"
    MEUBLES = "meubles"
    DOCUMENTS = "documents"
    FRAGILE = "fragile"
    LIQUIDES = "liquides"
    PRODUITS_CHIMIQUES = "produits_chimiques"
    MATERIAUX_CONSTRUCTION = "materiaux_construction"
    VEHICULES = "vehicules"
    AUTRE = "autre"


class TypeTarification(str, Enum):
    PAR_KG = "par_kg"
    PRIX_FIXE = "prix_fixe"
    NEGOCIABLE = "negociable"


class Devise(str, Enum):
    MAD = "MAD"
    EUR = "EUR"
    USD = "USD"


class TypeVehicule(str, Enum):
    CAMIONNETTE = "camionnette"
    CAMION = "camion"
    FOURGON = "fourgon"
    VOITURE = "voiture"
    MOTO = "moto"


class Flexibilite(str, Enum):
    EXACTE = "exacte"
    FLEXIBLE_1H = "flexible_1h"
    FLEXIBLE_3H = "flexible_3h"
    FLEXIBLE_1J = "flexible_1j"


# ===========================
# CHAMPS DÉRIVÉS
# ===========================
def calculer_volume(dimensions: Optional[Dict[str, Any]]) -> Optional[float]:
    """volume = longueur × largeur × hauteur (None si une dimension manque)"""
    if not dimensions:
        return None
    try:
        return round(dimensions["longueur"] * dimensions["largeur"] * dimensions["hauteur"], 4)
    except (KeyError, TypeError):
        return None


def calculer_taux_acceptation(nombre_demandes: int, nombre_acceptees: int) -> float:
    if not nombre_demandes:
        return 0
    return round(nombre_acceptees / nombre_demandes * 100, 2)


def calculer_date_arrivee(date_depart: Optional[datetime], duree_estimee: Optional[float]) -> Optional[datetime]:
    if not date_depart or not duree_estimee:
        return None
    return date_depart + timedelta(hours=duree_estimee)


def apply_derived_fields(annonce: Dict[str, Any]) -> Dict[str, Any]:
    """Recalcule volumeMax, tauxAcceptation et dateArriveeEstimee sur un document"""
    capacite = annonce.get("capacite") or {}
    volume = calculer_volume(capacite.get("dimensionsMax"))
    if volume is not None:
        capacite["volumeMax"] = volume
        annonce["capacite"] = capacite

    stats = annonce.setdefault("statistiques", {})
    stats["tauxAcceptation"] = calculer_taux_acceptation(
        stats.get("nombreDemandes", 0), stats.get("nombreDemandesAcceptees", 0)
    )

    planning = annonce.get("planning") or {}
    if planning.get("dateDepart") and not planning.get("dateArriveeEstimee"):
        arrivee = calculer_date_arrivee(planning["dateDepart"], (annonce.get("trajet") or {}).get("dureeEstimee"))
        if arrivee:
            planning["dateArriveeEstimee"] = arrivee
    return annonce


# ===========================
# RÈGLES MÉTIER
# ===========================
def peut_accepter_colis(annonce: Dict[str, Any], dimensions: Dict[str, Any], poids: float) -> bool:
    """
    Vérifie qu'un colis tient dans l'enveloppe de capacité de l'annonce.
    Prédicat pur : les trois dimensions et le poids doivent être inférieurs ou égaux aux maxima.
    """
    capacite = annonce.get("capacite") or {}
    dims_max = capacite.get("dimensionsMax") or {}
    for cle in ("longueur", "largeur", "hauteur"):
        maximum = dims_max.get(cle)
        if maximum is None or dimensions.get(cle) is None or dimensions[cle] > maximum:
            return False
    poids_max = capacite.get("poidsMax")
    return poids_max is not None and poids is not None and poids <= poids_max


def accepte_type_marchandise(annonce: Dict[str, Any], type_colis: Optional[str]) -> bool:
    types = annonce.get("typesMarchandise") or []
    if not types or not type_colis:
        return True
    return type_colis in types


def calculer_tarif(annonce: Dict[str, Any], poids: float, montant_propose: Optional[float] = None) -> Optional[float]:
    """par_kg : poids × prixParKg ; prix_fixe : prixFixe ; négociable : montant proposé"""
    tarification = annonce.get("tarification") or {}
    mode = tarification.get("typeTarification")
    if mode == TypeTarification.PAR_KG.value and tarification.get("prixParKg") is not None:
        return round(poids * tarification["prixParKg"], 2)
    if mode == TypeTarification.PRIX_FIXE.value and tarification.get("prixFixe") is not None:
        return tarification["prixFixe"]
    return montant_propose
