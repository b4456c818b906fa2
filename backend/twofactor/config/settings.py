"""Application settings loaded from environment variables.

Secure-by-default:
- Debug is disabled.
- Secrets must be provided via environment variables.
- Backup codes and TOTP parameters follow the values authenticator apps expect.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    app_name: str = Field(default='EVID-DGC Two-Factor API')
    environment: str = Field(default='production')
    debug: bool = Field(default=False)
    api_prefix: str = Field(default='/api/v1')

    issuer: str = Field(default='EVID-DGC')
    default_account_domain: str = Field(default='evid-dgc.com')

    storage_backend: str = Field(default='memory')
    storage_key: str = Field(default='evid_2fa_data')
    storage_dir: str = Field(default='.twofactor')
    database_url: str = Field(default='sqlite+pysqlite:///./twofactor.db')

    totp_step_seconds: int = Field(default=30, ge=1)
    totp_valid_window: int = Field(default=1, ge=0)
    backup_code_count: int = Field(default=10, ge=1)
    backup_code_length: int = Field(default=8, ge=4)

    jwt_secret: str = Field(default='CHANGE_ME_IN_ENV')
    jwt_algorithm: str = Field(default='HS256')
    jwt_access_expiry_minutes: int = Field(default=15)
    secure_cookies: bool = Field(default=False)

    log_level: str = Field(default='INFO')
    log_format: str = Field(default='text')


settings = Settings()
