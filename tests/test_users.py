"""
Profils, classement et suppression de compte
"""
import pytest

from app.db.mongo import ANNONCES, USERS
from app.users.services import UserService
from app.utils.errors import AuthenticationError, BusinessRuleError

from tests.factories import PASSWORD, annonce_data, create_user, insert_demande


class TestProfil:

    @pytest.mark.asyncio
    async def test_contact_hidden_from_public(self, db):
        user = await create_user(db, "conducteur")
        public = await UserService(db).get_profile(str(user["_id"]))
        assert "email" not in public
        assert "telephone" not in public
        assert "motDePasse" not in public
        assert public["nomComplet"] == "Karim Alaoui"

    @pytest.mark.asyncio
    async def test_owner_sees_contact(self, db):
        user = await create_user(db, "conducteur")
        profil = await UserService(db).get_profile(str(user["_id"]), viewer=user)
        assert profil["email"] == user["email"]
        assert "motDePasse" not in profil

    @pytest.mark.asyncio
    async def test_partial_update(self, db):
        user = await create_user(db, "expediteur")
        updated = await UserService(db).update_profile(user, {"prenom": "Yassine", "adresse": {"ville": "Fès"}})
        assert updated["prenom"] == "Yassine"
        assert updated["adresse"] == {"ville": "Fès", "pays": "Maroc"}


class TestClassement:

    @pytest.mark.asyncio
    async def test_top_requires_three_ratings(self, db):
        await create_user(db, "conducteur", statistiques={"noteMoyenne": 5, "nombreEvaluations": 2})
        bon = await create_user(db, "conducteur", statistiques={"noteMoyenne": 4.5, "nombreEvaluations": 3})
        meilleur = await create_user(db, "conducteur", statistiques={"noteMoyenne": 5, "nombreEvaluations": 10})

        top = await UserService(db).top(role="conducteur")
        assert [u["_id"] for u in top] == [meilleur["_id"], bon["_id"]]

    @pytest.mark.asyncio
    async def test_rechercher_by_name_and_city(self, db):
        await create_user(db, "conducteur", nom="Tazi", ville="Marrakech")
        await create_user(db, "conducteur", nom="Fassi", ville="Tanger")
        users, total = await UserService(db).rechercher(q="taz", ville="marra")
        assert total == 1
        assert users[0]["nom"] == "Tazi"


class TestSuppressionCompte:

    @pytest.mark.asyncio
    async def test_wrong_password(self, db):
        user = await create_user(db, "expediteur")
        with pytest.raises(AuthenticationError):
            await UserService(db).supprimer_compte(user, "mauvais123")

    @pytest.mark.asyncio
    async def test_refused_with_active_transaction(self, db):
        conducteur = await create_user(db, "conducteur")
        expediteur = await create_user(db, "expediteur")
        await insert_demande(db, expediteur, conducteur, statut="en_transit")
        with pytest.raises(BusinessRuleError):
            await UserService(db).supprimer_compte(expediteur, PASSWORD)

    @pytest.mark.asyncio
    async def test_tombstone_and_anonymise(self, db):
        conducteur = await create_user(db, "conducteur")
        await db[ANNONCES].insert_one({**annonce_data(), "conducteur": conducteur["_id"], "statut": "active", "supprime": False})

        await UserService(db).supprimer_compte(conducteur, PASSWORD)

        doc = await db[USERS].find_one({"_id": conducteur["_id"]})
        assert doc["supprime"] is True
        assert doc["nom"] == "Utilisateur"
        assert doc["email"].startswith("deleted_")
        assert await db[ANNONCES].count_documents({"supprime": True}) == 1
