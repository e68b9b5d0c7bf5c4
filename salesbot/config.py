from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./salesbot.db"
    debug: bool = False
    log_level: str = "INFO"
    cors_allow_origins: str = "*"

    # Inference
    gemini_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GEMINI_API_KEY", "API_KEY"),
    )
    gemini_model: str = "gemini-3-flash-preview"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    inference_timeout_seconds: float = 45.0
    inference_max_attempts: int = 3
    inference_backoff_seconds: float = 2.0
    max_output_tokens: int = 800
    temperature: float = 0.7
    history_limit: int = 10

    # WhatsApp Cloud API
    whatsapp_access_token: Optional[str] = None
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_verify_token: str = "johntech_verify_token"
    whatsapp_app_id: Optional[str] = None
    whatsapp_app_secret: Optional[str] = None
    whatsapp_business_account_id: Optional[str] = None
    graph_api_version: str = "v17.0"
    graph_base_url: str = "https://graph.facebook.com"
    public_base_url: str = "http://localhost:5041"

    # Dispatch
    send_delay_seconds: float = 0.8
    max_product_images: int = 5

    # Retry queue
    retry_worker_enabled: bool = True
    retry_sweep_interval_seconds: float = 60.0
    retry_max_attempts: int = 10

    # Lead analysis
    lead_worker_enabled: bool = True
    lead_analysis_interval_seconds: float = 86400.0
    lead_cooldown_seconds: float = 3600.0
    lead_batch_size: int = 20
    lead_min_messages: int = 3
    lead_transcript_messages: int = 15

    # Persona
    business_name: str = "JohnTech Vendors Ltd"
    agent_name: str = "John"
    business_location: str = "Thika Road, Kihunguro, Behind Shell Petrol Station"
    currency: str = "KSh"

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


settings = Settings()
