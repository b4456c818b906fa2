from datetime import datetime, timedelta, timezone

from jose import jwt

from twofactor.config.settings import settings


def create_access_token(user_id: str, role: str | int, two_factor_verified: bool = False) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_access_expiry_minutes)
    claims = {'sub': user_id, 'type': 'access', 'role': role, 'tfa': two_factor_verified, 'exp': exp}
    return jwt.encode(claims, settings.jwt_secret, settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
