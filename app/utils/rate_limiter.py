"""
Limiteur de débit en mémoire (fenêtre fixe par client)
"""
import time
from typing import Dict

from fastapi import Request

from app.config import settings
from app.utils.errors import TooManyRequestsError


class RateLimiter:
    """Compte les requêtes par client et par fenêtre de temps"""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.memory_store: Dict[str, Dict[str, float]] = {}

    def get_client_id(self, request: Request) -> str:
        """Un compteur par adresse IP, toutes routes confondues"""
        return request.client.host if request.client else "unknown"

    def _purge(self, now: float) -> None:
        self.memory_store = {
            key: data for key, data in self.memory_store.items()
            if now - data["window_start"] < self.window_seconds
        }

    def hit(self, client_id: str, now: float = None) -> int:
        """Enregistre une requête et retourne le nombre de secondes restantes si la limite est dépassée, sinon 0."""
        now = time.time() if now is None else now
        data = self.memory_store.get(client_id)
        if data is None or now - data["window_start"] >= self.window_seconds:
            self._purge(now)
            data = {"count": 0, "window_start": now}
        data["count"] += 1
        self.memory_store[client_id] = data

        if data["count"] > self.max_requests:
            return max(1, int(self.window_seconds - (now - data["window_start"])))
        return 0

    def reset(self) -> None:
        self.memory_store.clear()

    async def __call__(self, request: Request) -> None:
        remaining = self.hit(self.get_client_id(request))
        if remaining:
            raise TooManyRequestsError(f"Trop de requêtes. Réessayez dans {remaining} secondes.")


api_rate_limiter = RateLimiter(settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)
login_rate_limiter = RateLimiter(settings.LOGIN_RATE_LIMIT_MAX, settings.RATE_LIMIT_WINDOW_SECONDS)
