"""
Dérivations pures : volume, taux d'acceptation, capacité, note, numéro de suivi, conversation
"""
import re
from datetime import datetime

from bson import ObjectId

from app.annonces.models import (
    apply_derived_fields,
    calculer_date_arrivee,
    calculer_tarif,
    calculer_taux_acceptation,
    calculer_volume,
    peut_accepter_colis,
)
from app.demandes.models import generer_numero_suivi, to_base36
from app.evaluations.models import arrondir_demi, calculer_note, criteres_manquants, moyenne_notes
from app.messages.models import conversation_id


class TestVolumeEtTaux:

    def test_volume(self):
        assert calculer_volume({"longueur": 30, "largeur": 20, "hauteur": 10}) == 6000

    def test_volume_missing_dimension(self):
        assert calculer_volume({"longueur": 30, "largeur": 20}) is None
        assert calculer_volume(None) is None

    def test_taux_acceptation(self):
        assert calculer_taux_acceptation(0, 0) == 0
        assert calculer_taux_acceptation(3, 1) == 33.33
        assert calculer_taux_acceptation(4, 4) == 100

    def test_date_arrivee(self):
        depart = datetime(2026, 5, 1, 8, 0)
        assert calculer_date_arrivee(depart, 2.5) == datetime(2026, 5, 1, 10, 30)
        assert calculer_date_arrivee(depart, None) is None

    def test_apply_derived_fields(self):
        annonce = {
            "trajet": {"dureeEstimee": 3},
            "planning": {"dateDepart": datetime(2026, 5, 1, 8, 0)},
            "capacite": {"poidsMax": 20, "dimensionsMax": {"longueur": 100, "largeur": 50, "hauteur": 40}},
            "statistiques": {"nombreDemandes": 2, "nombreDemandesAcceptees": 1},
        }
        apply_derived_fields(annonce)
        assert annonce["capacite"]["volumeMax"] == 200000
        assert annonce["statistiques"]["tauxAcceptation"] == 50
        assert annonce["planning"]["dateArriveeEstimee"] == datetime(2026, 5, 1, 11, 0)


class TestCapacite:
    """peut_accepter_colis : chaque dimension et le poids <= maxima"""

    annonce = {"capacite": {"poidsMax": 20, "dimensionsMax": {"longueur": 100, "largeur": 50, "hauteur": 40}}}

    def test_fits(self):
        assert peut_accepter_colis(self.annonce, {"longueur": 100, "largeur": 50, "hauteur": 40}, 20)

    def test_too_heavy(self):
        assert not peut_accepter_colis(self.annonce, {"longueur": 10, "largeur": 10, "hauteur": 10}, 20.5)

    def test_one_dimension_too_large(self):
        assert not peut_accepter_colis(self.annonce, {"longueur": 10, "largeur": 51, "hauteur": 10}, 1)

    def test_tarif(self):
        assert calculer_tarif({"tarification": {"typeTarification": "par_kg", "prixParKg": 12}}, 2.5) == 30
        assert calculer_tarif({"tarification": {"typeTarification": "prix_fixe", "prixFixe": 150}}, 9) == 150
        assert calculer_tarif({"tarification": {"typeTarification": "negociable"}}, 9, 80) == 80


class TestNotes:

    def test_arrondi_demi(self):
        assert arrondir_demi(4.25) == 4.5
        assert arrondir_demi(4.2) == 4.0
        assert arrondir_demi(3.75) == 4.0

    def test_note_from_criteria(self):
        assert calculer_note({"ponctualite": 5, "communication": 4, "professionnalisme": 3}) == 4
        assert calculer_note({"a": 5, "b": 4, "c": 4, "d": 4, "e": 4}) == 4
        assert calculer_note({"a": 5, "b": 5, "c": 4, "d": 4}) == 4.5

    def test_note_ignores_absent_criteria(self):
        assert calculer_note({"ponctualite": 5, "soinMarchandise": None}) == 5

    def test_moyenne_notes(self):
        assert moyenne_notes([5, 4, 3]) == 4
        assert moyenne_notes([]) == 0

    def test_specific_criterion_required(self):
        communs = {"ponctualite": 5, "communication": 5, "professionnalisme": 5, "respectConsignes": 5}
        assert criteres_manquants("expediteur_vers_conducteur", communs) == ["soinMarchandise"]
        assert criteres_manquants("conducteur_vers_expediteur", communs) == ["qualiteEmballage"]


class TestNumeroSuivi:

    def test_base36(self):
        assert to_base36(0) == "0"
        assert to_base36(35) == "Z"
        assert to_base36(36) == "10"

    def test_format(self):
        numero = generer_numero_suivi(1700000000000)
        assert re.fullmatch(r"TC[0-9A-Z]+", numero)
        assert numero.startswith("TC" + to_base36(1700000000000))
        assert len(numero) == 2 + len(to_base36(1700000000000)) + 4


class TestConversationId:

    def test_symmetric(self):
        a, b, annonce = ObjectId(), ObjectId(), ObjectId()
        assert conversation_id(a, b, annonce) == conversation_id(b, a, annonce)

    def test_sorted_join(self):
        a, b, annonce = ObjectId(), ObjectId(), ObjectId()
        assert conversation_id(a, b, annonce) == "_".join(sorted([str(a), str(b), str(annonce)]))
