from fastapi import Depends, Request
from sqlalchemy.orm import Session

from token_gateway.config import Settings, get_settings
from token_gateway.crypto import TokenCipher
from token_gateway.database import get_db
from token_gateway.errors import GatewayError
from token_gateway.installations import InstallationStore
from token_gateway.metrics import Metrics
from token_gateway.provider import HighLevelClient
from token_gateway.replay_guard import ReplayGuard


def get_metrics(request: Request) -> Metrics:
    return request.app.state.metrics


def get_provider(settings: Settings = Depends(get_settings)) -> HighLevelClient:
    return HighLevelClient(settings)


def get_cipher(settings: Settings = Depends(get_settings)) -> TokenCipher:
    key = settings.encryption_key.get_secret_value()
    if not key:
        raise GatewayError("ENCRYPTION_KEY is not configured")
    return TokenCipher(key)


def get_store(db: Session = Depends(get_db), cipher: TokenCipher = Depends(get_cipher)) -> InstallationStore:
    return InstallationStore(db, cipher)


def get_guard(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> ReplayGuard:
    return ReplayGuard(db, state_ttl_min=settings.state_ttl_min, code_ttl_min=settings.code_ttl_min)
