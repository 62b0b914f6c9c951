"""
Évaluations : unicité par transaction, note agrégée, modération
"""
import pytest

from app.db.mongo import DEMANDES, EVALUATIONS, USERS
from app.evaluations.services import EvaluationService
from app.utils.errors import BusinessRuleError, PermissionDeniedError, ValidationAppError

from tests.factories import create_user, insert_demande

CRITERES_EXPEDITEUR = {
    "ponctualite": 5, "communication": 4, "professionnalisme": 3, "respectConsignes": 4, "soinMarchandise": 4,
}
CRITERES_CONDUCTEUR = {
    "ponctualite": 5, "communication": 5, "professionnalisme": 5, "respectConsignes": 5, "qualiteEmballage": 4,
}


def evaluation_data(demande, criteres=None, **overrides):
    data = {
        "demande": str(demande["_id"]),
        "criteres": dict(criteres or CRITERES_EXPEDITEUR),
        "commentaire": "Transport soigné, conducteur ponctuel",
        "recommande": True,
        "avantages": ["ponctuel"],
        "inconvenients": [],
    }
    data.update(overrides)
    return data


@pytest.fixture
def service(db):
    return EvaluationService(db)


class TestCreation:

    @pytest.mark.asyncio
    async def test_expediteur_rates_conducteur(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur)

        evaluation = await service.create_evaluation(evaluation_data(demande), expediteur)
        assert evaluation["typeEvaluation"] == "expediteur_vers_conducteur"
        assert evaluation["evalue"] == conducteur["_id"]
        assert evaluation["note"] == 4
        assert evaluation["moderationAdmin"]["approuvee"] is True

        demande_doc = await db[DEMANDES].find_one({"_id": demande["_id"]})
        assert demande_doc["evaluation"]["expediteurVersConducteur"] == evaluation["_id"]

        conducteur_doc = await db[USERS].find_one({"_id": conducteur["_id"]})
        assert conducteur_doc["statistiques"]["noteMoyenne"] == 4
        assert conducteur_doc["statistiques"]["nombreEvaluations"] == 1

    @pytest.mark.asyncio
    async def test_one_rating_per_transaction(self, db, service):
        """Une seule évaluation par (évaluateur, évalué, demande)"""
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur)

        await service.create_evaluation(evaluation_data(demande), expediteur)
        with pytest.raises(BusinessRuleError) as exc:
            await service.create_evaluation(evaluation_data(demande), expediteur)
        assert "déjà évalué" in exc.value.message
        assert await db[EVALUATIONS].count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_both_directions_allowed(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur)

        await service.create_evaluation(evaluation_data(demande), expediteur)
        retour = await service.create_evaluation(evaluation_data(demande, CRITERES_CONDUCTEUR), conducteur)
        assert retour["typeEvaluation"] == "conducteur_vers_expediteur"
        assert retour["note"] == 5

    @pytest.mark.asyncio
    async def test_requires_delivered_demande(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur, statut="en_transit")
        with pytest.raises(BusinessRuleError):
            await service.create_evaluation(evaluation_data(demande), expediteur)

    @pytest.mark.asyncio
    async def test_outsider_cannot_rate(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        intrus = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur)
        with pytest.raises(PermissionDeniedError):
            await service.create_evaluation(evaluation_data(demande), intrus)

    @pytest.mark.asyncio
    async def test_missing_specific_criterion(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur)
        criteres = {k: v for k, v in CRITERES_EXPEDITEUR.items() if k != "soinMarchandise"}
        with pytest.raises(ValidationAppError) as exc:
            await service.create_evaluation(evaluation_data(demande, criteres), expediteur)
        assert exc.value.errors[0]["champ"] == "criteres.soinMarchandise"


class TestNoteAgregee:

    @pytest.mark.asyncio
    async def test_mean_of_approved_ratings(self, db, service):
        """Notes 5, 4, 3 -> moyenne 4"""
        conducteur = await create_user(db, "conducteur")
        for valeur in (5, 4, 3):
            expediteur = await create_user(db, "expediteur")
            demande = await insert_demande(db, expediteur, conducteur)
            criteres = {k: valeur for k in CRITERES_EXPEDITEUR}
            await service.create_evaluation(evaluation_data(demande, criteres), expediteur)

        conducteur_doc = await db[USERS].find_one({"_id": conducteur["_id"]})
        assert conducteur_doc["statistiques"]["noteMoyenne"] == 4
        assert conducteur_doc["statistiques"]["nombreEvaluations"] == 3

    @pytest.mark.asyncio
    async def test_rejected_rating_excluded(self, db, service):
        conducteur = await create_user(db, "conducteur")
        admin = await create_user(db, "admin")
        evaluations = []
        for valeur in (5, 1):
            expediteur = await create_user(db, "expediteur")
            demande = await insert_demande(db, expediteur, conducteur)
            criteres = {k: valeur for k in CRITERES_EXPEDITEUR}
            evaluations.append(await service.create_evaluation(evaluation_data(demande, criteres), expediteur))

        await service.moderer(evaluations[1]["_id"], "rejeter", admin, raison_rejet="Propos injurieux envers le conducteur")
        conducteur_doc = await db[USERS].find_one({"_id": conducteur["_id"]})
        assert conducteur_doc["statistiques"]["noteMoyenne"] == 5
        assert conducteur_doc["statistiques"]["nombreEvaluations"] == 1

    @pytest.mark.asyncio
    async def test_zero_ratings(self, db, service):
        conducteur = await create_user(db, "conducteur")
        stats = await service.recalculer_note_utilisateur(conducteur["_id"])
        assert stats == {"noteMoyenne": 0, "nombreEvaluations": 0}


class TestInteractions:

    @pytest.mark.asyncio
    async def test_single_response_by_rated_user(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur)
        evaluation = await service.create_evaluation(evaluation_data(demande), expediteur)

        with pytest.raises(PermissionDeniedError):
            await service.repondre(evaluation["_id"], "Je réponds à ma propre évaluation", expediteur)

        repondue = await service.repondre(evaluation["_id"], "Merci pour votre confiance !", conducteur)
        assert repondue["reponse"]["auteur"] == conducteur["_id"]
        with pytest.raises(BusinessRuleError):
            await service.repondre(evaluation["_id"], "Une seconde réponse impossible", conducteur)

    @pytest.mark.asyncio
    async def test_utile_once_per_user(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        lecteur = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur)
        evaluation = await service.create_evaluation(evaluation_data(demande), expediteur)

        updated = await service.marquer_utile(evaluation["_id"], lecteur)
        assert updated["statistiques"]["nombreLikes"] == 1
        with pytest.raises(BusinessRuleError):
            await service.marquer_utile(evaluation["_id"], lecteur)

    @pytest.mark.asyncio
    async def test_signalement(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        admin = await create_user(db, "admin")
        demande = await insert_demande(db, expediteur, conducteur)
        evaluation = await service.create_evaluation(evaluation_data(demande), expediteur)

        with pytest.raises(BusinessRuleError):
            await service.signaler(evaluation["_id"], "faux_commentaire", None, expediteur)

        await service.signaler(evaluation["_id"], "note_injustifiee", "Le colis a été livré en retard", conducteur)
        with pytest.raises(BusinessRuleError):
            await service.signaler(evaluation["_id"], "autre", None, conducteur)

        en_attente, total = await service.file_moderation()
        assert total == 1

        traitee = await service.moderer(evaluation["_id"], "traiter_signalement", admin, decision="supprimee")
        assert traitee["signalement"]["traite"] is True
        assert traitee["moderationAdmin"]["approuvee"] is False
        conducteur_doc = await db[USERS].find_one({"_id": conducteur["_id"]})
        assert conducteur_doc["statistiques"]["nombreEvaluations"] == 0

    @pytest.mark.asyncio
    async def test_unapproved_hidden_from_public(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        admin = await create_user(db, "admin")
        demande = await insert_demande(db, expediteur, conducteur)
        evaluation = await service.create_evaluation(evaluation_data(demande), expediteur)
        await service.moderer(evaluation["_id"], "rejeter", admin, raison_rejet="Contenu hors sujet pour cet avis")

        public, total = await service.get_evaluations_utilisateur(str(conducteur["_id"]))
        assert total == 0
        parties, total = await service.get_evaluations_utilisateur(str(conducteur["_id"]), viewer=conducteur)
        assert total == 1

    @pytest.mark.asyncio
    async def test_update_blocked_after_approval(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        admin = await create_user(db, "admin")
        demande = await insert_demande(db, expediteur, conducteur)
        evaluation = await service.create_evaluation(evaluation_data(demande), expediteur)

        modifiee = await service.mettre_a_jour(evaluation["_id"], {"criteres": {k: 5 for k in CRITERES_EXPEDITEUR}}, expediteur)
        assert modifiee["note"] == 5

        await service.moderer(evaluation["_id"], "approuver", admin)
        with pytest.raises(BusinessRuleError):
            await service.mettre_a_jour(evaluation["_id"], {"recommande": False}, expediteur)

    @pytest.mark.asyncio
    async def test_resume(self, db, service):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        demande = await insert_demande(db, expediteur, conducteur)
        await service.create_evaluation(evaluation_data(demande), expediteur)

        resume = await service.resume_utilisateur(str(conducteur["_id"]))
        assert resume["total"] == 1
        assert resume["tauxRecommandation"] == 100
        assert resume["distribution"]["4"] == 1
        assert resume["moyennesCriteres"]["soinMarchandise"] == 4
        assert resume["moyennesCriteres"]["qualiteEmballage"] is None
