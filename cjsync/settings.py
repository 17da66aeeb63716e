from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "postgresql+psycopg://cjsync@localhost:5432/cjsync"

    cj_api_base_url: str = "https://developers.cjdropshipping.com/api2.0/v1"
    cj_supplier_name: str = "CJ Dropshipping"
    cj_email: str = ""
    cj_api_key: str = ""
    cj_platform_token: str = ""
    cj_tier: str = "free"  # free, plus, prime, advanced
    cj_retry_count: int = 5  # rate limit / 네트워크 재시도 횟수
    cj_request_timeout: float = 60.0

    sync_batch_size: int = 50  # 배치당 처리 단위 수 (1~500)
    sync_concurrency: int = 4  # 동시 워커 수
    sync_batch_sleep: float = 2.0  # 배치 간 대기 시간

    # 기능 토글
    enable_sync: bool = True
    enable_webhooks: bool = True
    enable_review_sync: bool = True

    environment: str = "development"  # development, production
    webhook_public_url: str = ""

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("cj_api_base_url")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v.rstrip("/")

    @field_validator("cj_tier")
    @classmethod
    def validate_tier(cls, v: str) -> str:
        tier = v.strip().lower()
        if tier not in ("free", "plus", "prime", "advanced"):
            raise ValueError("cj_tier는 free, plus, prime, advanced 중 하나여야 합니다.")
        return tier

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        env = v.strip().lower()
        if env not in ("development", "production"):
            raise ValueError("environment는 development 또는 production이어야 합니다.")
        return env

    @field_validator("sync_batch_sleep", "cj_request_timeout")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("대기 시간은 0 이상이어야 합니다.")
        return v

    @field_validator("sync_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not 1 <= v <= 500:
            raise ValueError("sync_batch_size는 1에서 500 사이여야 합니다.")
        return v

    @field_validator("sync_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if not 1 <= v <= 16:
            raise ValueError("sync_concurrency는 1에서 16 사이여야 합니다.")
        return v

    @field_validator("cj_retry_count")
    @classmethod
    def validate_retry_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("cj_retry_count는 1 이상이어야 합니다.")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
