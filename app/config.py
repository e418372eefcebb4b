from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MAX
    max_bot_token: str = ""
    admin_user_id: Optional[str] = None
    bot_polling_enabled: bool = True
    poll_timeout_seconds: int = 30
    poll_error_backoff_seconds: float = 5.0

    # Веб-форма заказа
    web_port: int = 3000
    web_base_url: str = "http://localhost:3000"
    web_form_secret: str = "change-me-in-production"
    dadata_api_key: Optional[str] = None
    yandex_geocoder_api_key: Optional[str] = None

    # amoCRM REST API
    amo_base_url: Optional[str] = None
    amo_client_id: Optional[str] = None
    amo_client_secret: Optional[str] = None
    amo_redirect_uri: Optional[str] = None
    amo_access_token: Optional[str] = None
    amo_refresh_token: Optional[str] = None
    amo_pipeline_id: Optional[int] = None
    amo_status_id: Optional[int] = None

    # amoCRM Chats API (amojo)
    amo_channel_id: Optional[str] = None
    amo_channel_secret: Optional[str] = None
    amo_scope_id: Optional[str] = None
    amo_source_external_id: Optional[str] = None

    # amoCRM webhook смены статуса сделки
    amo_webhook_secret: Optional[str] = None
    amo_order_form_link_field_id: int = 3031591
    amo_target_status_id: int = 57290354
    amo_target_pipeline_id: int = 6015049

    database_url: str = "sqlite:///./orange.db"
    log_level: str = "INFO"
    cors_allow_origins: str = "*"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def source_external_id(self) -> str:
        return self.amo_source_external_id or self.amo_channel_id or "max_bot_orange"


settings = Settings()
