import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field, constr

from twofactor.api.deps import Principal, get_current_principal, get_store
from twofactor.config.settings import settings
from twofactor.security.jwt import create_access_token
from twofactor.security.policy import needs_enrollment, requires_two_factor, requires_verification
from twofactor.services.errors import AlreadyEnabled, TwoFactorError
from twofactor.services.store import TwoFactorStore

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix='/2fa', tags=['two-factor'])

# One response for every failed check, so callers cannot tell a wrong code from a missing enrollment.
VERIFICATION_FAILED = 'Verification failed'


class SetupIn(BaseModel):
    account: str | None = Field(default=None, min_length=1, max_length=320)


class CodeIn(BaseModel):
    code: constr(min_length=1, max_length=64)


def _issue_verified_token(principal: Principal, response: Response) -> str:
    token = create_access_token(principal.user_id, principal.role, two_factor_verified=True)
    response.set_cookie('access_token', token, httponly=True, secure=settings.secure_cookies, samesite='strict')
    return token


@api_router.get('/status')
def two_factor_status(principal: Principal = Depends(get_current_principal), store: TwoFactorStore = Depends(get_store)):
    return {
        'state': store.enrollment_state(principal.user_id).value,
        'enabled': store.is_enabled(principal.user_id),
        'requires_two_factor': requires_two_factor(principal.role),
        'requires_verification': requires_verification(store, principal.user_id, principal.role),
        'needs_enrollment': needs_enrollment(store, principal.user_id, principal.role),
        'backup_codes_remaining': store.backup_codes_remaining(principal.user_id),
    }


@api_router.post('/setup')
def setup(
    payload: SetupIn | None = None,
    principal: Principal = Depends(get_current_principal),
    store: TwoFactorStore = Depends(get_store),
):
    try:
        secret = store.generate_secret(principal.user_id)
    except AlreadyEnabled as exc:
        raise HTTPException(status_code=409, detail='Two-factor authentication already enabled') from exc
    account = (payload.account if payload else None) or f'{principal.user_id}@{settings.default_account_domain}'
    return {'secret': secret, 'otpauth_uri': store.provisioning_uri(principal.user_id, account)}


@api_router.post('/enable')
def enable(payload: CodeIn, principal: Principal = Depends(get_current_principal), store: TwoFactorStore = Depends(get_store)):
    try:
        backup_codes = store.enable(principal.user_id, payload.code)
    except TwoFactorError as exc:
        raise HTTPException(status_code=400, detail='Invalid verification code') from exc
    return {'enabled': True, 'backup_codes': backup_codes}


@api_router.post('/disable')
def disable(payload: CodeIn, principal: Principal = Depends(get_current_principal), store: TwoFactorStore = Depends(get_store)):
    try:
        store.disable(principal.user_id, payload.code)
    except TwoFactorError as exc:
        logger.info('Disable rejected for user %s: %s', principal.user_id, exc.kind)
        raise HTTPException(status_code=401, detail=VERIFICATION_FAILED) from exc
    return {'disabled': True}


@api_router.post('/verify')
def verify(
    payload: CodeIn,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    store: TwoFactorStore = Depends(get_store),
):
    try:
        store.verify_login(principal.user_id, payload.code)
    except TwoFactorError as exc:
        logger.info('Login verification rejected for user %s: %s', principal.user_id, exc.kind)
        raise HTTPException(status_code=401, detail=VERIFICATION_FAILED) from exc
    return {'verified': True, 'access_token': _issue_verified_token(principal, response)}


@api_router.post('/backup/verify')
def verify_backup(
    payload: CodeIn,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    store: TwoFactorStore = Depends(get_store),
):
    try:
        store.verify_and_consume_backup_code(principal.user_id, payload.code)
    except TwoFactorError as exc:
        logger.info('Backup code rejected for user %s: %s', principal.user_id, exc.kind)
        raise HTTPException(status_code=401, detail=VERIFICATION_FAILED) from exc
    return {
        'verified': True,
        'backup_codes_remaining': store.backup_codes_remaining(principal.user_id),
        'access_token': _issue_verified_token(principal, response),
    }
