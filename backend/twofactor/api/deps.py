from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from twofactor.services import store as store_module
from twofactor.services.store import TwoFactorStore


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str | int | None
    two_factor_verified: bool = False


def get_store() -> TwoFactorStore:
    return store_module.store


def get_current_principal(request: Request) -> Principal:
    token_payload = getattr(request.state, 'token_payload', None)
    if not token_payload or token_payload.get('type') != 'access' or not token_payload.get('sub'):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Not authenticated')
    return Principal(
        user_id=str(token_payload['sub']),
        role=token_payload.get('role'),
        two_factor_verified=bool(token_payload.get('tfa', False)),
    )
