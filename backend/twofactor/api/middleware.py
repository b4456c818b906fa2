import logging

from fastapi import Request
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware

from twofactor.security.jwt import decode_token

logger = logging.getLogger(__name__)


class JWTMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.token_payload = None
        token = request.cookies.get('access_token')
        auth = request.headers.get('authorization', '')
        if auth.lower().startswith('bearer '):
            token = auth.split(' ', 1)[1]
        if token:
            try:
                request.state.token_payload = decode_token(token)
            except JWTError:
                logger.info('Ignoring invalid access token on %s', request.url.path)
        return await call_next(request)
