import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from app.config import settings

logger = logging.getLogger(__name__)

# Client MongoDB asynchrone
client = AsyncIOMotorClient(settings.MONGO_URL)
db = client[settings.MONGO_DB]

# Noms des collections
USERS = "users"
ANNONCES = "annonces"
DEMANDES = "demandes"
EVALUATIONS = "evaluations"
MESSAGES = "messages"


def get_database():
    """Dépendance FastAPI : base MongoDB courante (surchargée dans les tests)."""
    return db


async def ensure_indexes(database) -> None:
    """Crée les index et contraintes d'unicité utilisés par les services."""
    await database[USERS].create_index("email", unique=True)
    await database[USERS].create_index([("role", ASCENDING), ("statut", ASCENDING)])

    await database[ANNONCES].create_index([("conducteur", ASCENDING), ("createdAt", DESCENDING)])
    await database[ANNONCES].create_index([("statut", ASCENDING), ("planning.dateDepart", ASCENDING)])

    await database[DEMANDES].create_index("suivi.numeroSuivi", unique=True, sparse=True)
    await database[DEMANDES].create_index([("annonce", ASCENDING), ("statut", ASCENDING)])
    await database[DEMANDES].create_index([("expediteur", ASCENDING), ("createdAt", DESCENDING)])
    await database[DEMANDES].create_index([("conducteur", ASCENDING), ("createdAt", DESCENDING)])

    # Une seule évaluation par (évaluateur, évalué, demande)
    await database[EVALUATIONS].create_index(
        [("evaluateur", ASCENDING), ("evalue", ASCENDING), ("demande", ASCENDING)],
        unique=True,
    )
    await database[EVALUATIONS].create_index([("evalue", ASCENDING), ("moderationAdmin.approuvee", ASCENDING)])

    await database[MESSAGES].create_index([("conversation", ASCENDING), ("createdAt", DESCENDING)])
    await database[MESSAGES].create_index([("destinataire", ASCENDING), ("lu", ASCENDING)])

    logger.info("✅ Index MongoDB vérifiés")
