"""
Routes HTTP : enveloppe de réponse, gestionnaires d'erreurs, garde de rôle
"""
from datetime import timedelta

import pytest
from bson import ObjectId

from app.annonces.services import AnnonceService
from app.db.mongo import ANNONCES, USERS, get_database
from app.utils.mongodb_utils import utcnow
from app.utils.rate_limiter import api_rate_limiter

from tests.factories import PASSWORD, annonce_data, auth_headers, create_user


def annonce_json():
    data = annonce_data()
    data["planning"] = {"dateDepart": (utcnow() + timedelta(days=5)).isoformat()}
    return data


class TestEnveloppe:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "TransportConnect API opérationnelle"
        assert body["data"]["status"] == "OK"

    def test_root(self, client):
        assert "TransportConnect" in client.get("/").json()["message"]

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/api/inexistant")
        assert response.status_code == 404
        assert response.json()["success"] is False


class TestErreurs:

    def test_missing_token_401(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Accès refusé. Token manquant."}

    def test_validation_error_400(self, client):
        """Inscription en tant qu'admin refusée par la validation"""
        response = client.post("/api/auth/register", json={
            "nom": "Idrissi", "prenom": "Nadia", "email": "nadia@example.ma",
            "telephone": "+212611111111", "motDePasse": "secret123", "role": "admin",
        })
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert any(e["champ"] == "role" for e in body["errors"])

    def test_invalid_object_id_400(self, client):
        response = client.get("/api/annonces/pas-un-id")
        assert response.status_code == 400
        assert response.json()["errors"][0]["champ"] == "id"

    def test_not_found_404(self, client):
        response = client.get(f"/api/annonces/{ObjectId()}")
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Annonce non trouvée"}

    def test_unhandled_error_500_with_stack_outside_production(self, client):
        from app.main import app

        def boom():
            raise RuntimeError("base indisponible")

        app.dependency_overrides[get_database] = boom
        response = client.get(f"/api/annonces/{ObjectId()}")
        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Erreur interne du serveur"
        assert "RuntimeError" in body["stack"]


class TestAuthEtRoles:

    def test_register_then_me(self, client):
        response = client.post("/api/auth/register", json={
            "nom": "Bennani", "prenom": "Samira", "email": "Samira@Example.ma",
            "telephone": "+212622222222", "motDePasse": "secret123", "role": "conducteur",
        })
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "samira@example.ma"
        assert "motDePasse" not in data["user"]

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.status_code == 200
        assert me.json()["data"]["role"] == "conducteur"

    def test_duplicate_email(self, client):
        payload = {
            "nom": "Bennani", "prenom": "Samira", "email": "samira@example.ma",
            "telephone": "+212622222222", "motDePasse": "secret123",
        }
        assert client.post("/api/auth/register", json=payload).status_code == 201
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_login(self, client, db):
        user = await create_user(db, "expediteur", email="karim@example.ma")
        response = client.post("/api/auth/login", json={"email": "karim@example.ma", "motDePasse": PASSWORD})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["_id"] == str(user["_id"])

        wrong = client.post("/api/auth/login", json={"email": "karim@example.ma", "motDePasse": "mauvais123"})
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_expediteur_cannot_create_annonce(self, client, db):
        expediteur = await create_user(db, "expediteur")
        response = client.post("/api/annonces", json=annonce_json(), headers=auth_headers(expediteur))
        assert response.status_code == 403
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_conducteur_creates_annonce(self, client, db):
        conducteur = await create_user(db, "conducteur")
        response = client.post("/api/annonces", json=annonce_json(), headers=auth_headers(conducteur))
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["conducteur"] == str(conducteur["_id"])
        assert data["capacite"]["volumeMax"] == 480000
        assert data["statut"] == "active"

        listing = client.get("/api/annonces").json()["data"]
        assert listing["pagination"] == {
            "page": 1, "limit": 12, "total": 1, "pages": 1, "hasNext": False, "hasPrev": False,
        }

    @pytest.mark.asyncio
    async def test_suspended_user_rejected(self, client, db):
        user = await create_user(db, "expediteur", statut="suspendu")
        response = client.get("/api/auth/me", headers=auth_headers(user))
        assert response.status_code == 401


class TestAdmin:

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, client, db):
        conducteur = await create_user(db, "conducteur")
        assert client.get("/api/admin/dashboard", headers=auth_headers(conducteur)).status_code == 403

    @pytest.mark.asyncio
    async def test_cannot_change_other_admin_status(self, client, db):
        admin = await create_user(db, "admin")
        autre = await create_user(db, "admin")
        response = client.put(
            f"/api/admin/utilisateurs/{autre['_id']}/statut",
            json={"statut": "suspendu", "raison": "Test"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_change_user_status_appends_history(self, client, db):
        admin = await create_user(db, "admin")
        conducteur = await create_user(db, "conducteur")
        response = client.put(
            f"/api/admin/utilisateurs/{conducteur['_id']}/statut",
            json={"statut": "suspendu", "raison": "Annonces frauduleuses"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200
        doc = await db[USERS].find_one({"_id": conducteur["_id"]})
        assert doc["statut"] == "suspendu"
        assert doc["moderationHistorique"][0]["ancienStatut"] == "actif"
        assert doc["moderationHistorique"][0]["nouveauStatut"] == "suspendu"

    @pytest.mark.asyncio
    async def test_export_csv(self, client, db):
        admin = await create_user(db, "admin")
        await create_user(db, "conducteur")
        response = client.get("/api/admin/export/utilisateurs?format=csv", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        lignes = response.text.strip().splitlines()
        assert len(lignes) == 3
        assert "motDePasse" not in lignes[0]

    @pytest.mark.asyncio
    async def test_export_json(self, client, db):
        admin = await create_user(db, "admin")
        response = client.get("/api/admin/export/annonces", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["data"]["total"] == 0

    @pytest.mark.asyncio
    async def test_export_bad_format(self, client, db):
        admin = await create_user(db, "admin")
        response = client.get("/api/admin/export/annonces?format=xml", headers=auth_headers(admin))
        assert response.status_code == 400


class TestRateLimit:

    def test_login_rate_limited(self, client):
        payload = {"email": "personne@example.ma", "motDePasse": "mauvais123"}
        statuts = [client.post("/api/auth/login", json=payload).status_code for _ in range(6)]
        assert statuts[:5] == [401] * 5
        assert statuts[5] == 429

    def test_api_limit_shared_across_paths(self, client, monkeypatch):
        """Le compteur global est par client : changer d'identifiant dans l'URL ne remet pas le compteur à zéro"""
        monkeypatch.setattr(api_rate_limiter, "max_requests", 5)
        chemins = [f"/api/annonces/{ObjectId()}" for _ in range(5)] + ["/api/users/top"]
        statuts = [client.get(chemin).status_code for chemin in chemins]
        assert statuts[:5] == [404] * 5
        assert statuts[5] == 429
        assert client.get("/api/health").status_code == 200


class TestAnnonces:

    @pytest.mark.asyncio
    async def test_update_dimensions_recomputes_volume(self, client, db):
        conducteur = await create_user(db, "conducteur")
        annonce = await AnnonceService(db).create_annonce(annonce_data(), conducteur)
        response = client.put(
            f"/api/annonces/{annonce['_id']}",
            json={"capacite": {"poidsMax": 20, "dimensionsMax": {"longueur": 10, "largeur": 10, "hauteur": 10}}},
            headers=auth_headers(conducteur),
        )
        assert response.status_code == 200
        assert response.json()["data"]["capacite"]["volumeMax"] == 1000

    @pytest.mark.asyncio
    async def test_update_duration_recomputes_arrival(self, client, db):
        conducteur = await create_user(db, "conducteur")
        annonce = await AnnonceService(db).create_annonce(annonce_data(), conducteur)
        response = client.put(
            f"/api/annonces/{annonce['_id']}",
            json={"trajet": {"depart": {"ville": "Casablanca"}, "destination": {"ville": "Rabat"}, "dureeEstimee": 5}},
            headers=auth_headers(conducteur),
        )
        assert response.status_code == 200
        doc = await db[ANNONCES].find_one({"_id": annonce["_id"]})
        assert doc["planning"]["dateArriveeEstimee"] - doc["planning"]["dateDepart"] == timedelta(hours=5)

    @pytest.mark.asyncio
    async def test_owner_views_not_counted(self, client, db):
        conducteur = await create_user(db, "conducteur")
        visiteur = await create_user(db, "expediteur")
        annonce = await AnnonceService(db).create_annonce(annonce_data(), conducteur)
        url = f"/api/annonces/{annonce['_id']}"

        assert client.get(url, headers=auth_headers(conducteur)).status_code == 200
        assert client.get(url, headers=auth_headers(visiteur)).status_code == 200
        assert client.get(url).status_code == 200

        doc = await db[ANNONCES].find_one({"_id": annonce["_id"]})
        assert doc["statistiques"]["nombreVues"] == 2

    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, client, db):
        conducteur = await create_user(db, "conducteur")
        service = AnnonceService(db)
        await service.create_annonce(annonce_data(), conducteur)
        await service.create_annonce(annonce_data(titre="Deuxième trajet"), conducteur)
        await service.create_annonce(annonce_data(trajet={
            "depart": {"ville": "Fès"}, "destination": {"ville": "Tanger"}, "dureeEstimee": 4,
        }), conducteur)

        page1 = client.get("/api/annonces?villeDepart=casablanca&limit=1").json()["data"]
        assert len(page1["items"]) == 1
        assert page1["pagination"] == {
            "page": 1, "limit": 1, "total": 2, "pages": 2, "hasNext": True, "hasPrev": False,
        }
        page2 = client.get("/api/annonces?villeDepart=casablanca&limit=1&page=2").json()["data"]
        assert page2["pagination"]["hasNext"] is False
        assert page2["pagination"]["hasPrev"] is True
        assert page1["items"][0]["_id"] != page2["items"][0]["_id"]

        assert client.get("/api/annonces?villeDestination=TANGER").json()["data"]["pagination"]["total"] == 1
        assert client.get("/api/annonces?prixMax=5").json()["data"]["pagination"]["total"] == 0
        assert client.get("/api/annonces?prixMin=5&prixMax=15").json()["data"]["pagination"]["total"] == 3

    @pytest.mark.asyncio
    async def test_search_total_matches_capacity(self, client, db):
        conducteur = await create_user(db, "conducteur")
        service = AnnonceService(db)
        await service.create_annonce(annonce_data(), conducteur)
        await service.create_annonce(annonce_data(capacite={
            "poidsMax": 10, "dimensionsMax": {"longueur": 40, "largeur": 40, "hauteur": 40},
        }), conducteur)

        gros = client.get("/api/annonces/rechercher?poids=30&longueur=50&largeur=50&hauteur=50").json()["data"]
        assert gros["pagination"]["total"] == 1
        assert len(gros["items"]) == 1

        petit = client.get("/api/annonces/rechercher?poids=5&longueur=30&largeur=20&hauteur=10").json()["data"]
        assert petit["pagination"]["total"] == 2
