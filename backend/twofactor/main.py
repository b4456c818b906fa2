from fastapi import FastAPI

from twofactor.api.middleware import JWTMiddleware
from twofactor.api.router import api_router
from twofactor.config.logging import configure_logging
from twofactor.config.settings import settings


configure_logging(settings.log_level, settings.log_format)

app = FastAPI(title=settings.app_name, debug=settings.debug)
app.add_middleware(JWTMiddleware)
app.include_router(api_router, prefix=settings.api_prefix)


@app.get('/healthz', tags=['health'])
def healthcheck() -> dict[str, str]:
    return {'status': 'ok'}
