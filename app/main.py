import logging
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.db.mongo import db, ensure_indexes
from app.utils.errors import register_exception_handlers
from app.utils.mongodb_utils import utcnow
from app.utils.rate_limiter import api_rate_limiter
from app.utils.responses import success_response

from app.auth.api import router as auth_router
from app.users.api import router as users_router
from app.annonces.api import router as annonces_router
from app.demandes.api import router as demandes_router
from app.evaluations.api import router as evaluations_router
from app.messages.api import router as messages_router, ws_router
from app.admin.api import router as admin_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="TransportConnect API", version="1.0.0")

# Middleware CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Ajout des routers (limiteur de débit sur toutes les routes HTTP)
for router in (auth_router, users_router, annonces_router, demandes_router, evaluations_router, messages_router, admin_router):
    app.include_router(router, dependencies=[Depends(api_rate_limiter)])
app.include_router(ws_router)


@app.on_event("startup")
async def startup():
    await ensure_indexes(db)
    logger.info(f"✅ TransportConnect démarré (environnement : {settings.ENVIRONMENT})")


@app.get("/api/health")
async def health():
    return success_response(
        {"status": "OK", "environment": settings.ENVIRONMENT, "timestamp": utcnow()},
        "TransportConnect API opérationnelle",
    )


@app.get("/")
async def root():
    return {"message": "Bienvenue sur l'API TransportConnect !"}
