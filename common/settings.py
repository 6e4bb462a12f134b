import os
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./store.db")

    discord_api_base: str = os.getenv("DISCORD_API_BASE", "https://discord.com/api/v10")
    discord_bot_token: Optional[str] = os.getenv("DISCORD_BOT_TOKEN")
    discord_guild_id: str = os.getenv("DISCORD_GUILD_ID", "")
    default_server_slug: str = os.getenv("DEFAULT_SERVER_SLUG", "default")
    discord_timeout_seconds: float = float(os.getenv("DISCORD_TIMEOUT_SECONDS", "10"))
    discord_max_retries: int = int(os.getenv("DISCORD_MAX_RETRIES", "3"))
    discord_backoff_seconds: float = float(os.getenv("DISCORD_BACKOFF_SECONDS", "0.5"))

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    kafka_flush_timeout: float = float(os.getenv("KAFKA_FLUSH_TIMEOUT", "5"))

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    order_lock_ttl_seconds: int = int(os.getenv("ORDER_LOCK_TTL_SECONDS", "30"))

    jwt_issuer: str = os.getenv("JWT_ISSUER", "community-store")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    admin_audience: str = os.getenv("ADMIN_AUDIENCE", "store-admin")

    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")
    notification_locale: str = os.getenv("NOTIFICATION_LOCALE", "en")
    timezone_offset_minutes: int = int(os.getenv("TIMEZONE_OFFSET_MINUTES", "180"))

settings = Settings()
