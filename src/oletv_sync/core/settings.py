"""Configurações Pydantic Settings da integração ERP → Olé TV."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    """Configurações da aplicação. Carrega de env e .env.

    Credenciais do provedor ficam por integração (no banco, criptografadas);
    aqui só entram parâmetros de infraestrutura.
    """
    model_config = SettingsConfigDict(env_file=".env", env_prefix="OLE_", case_sensitive=False)

    # Flask
    flask_debug: bool = Field(default=False)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Logging
    log_level: str = Field(default="INFO")

    # DB
    database_url: str = Field(..., description="URL do Postgres, ex: postgresql+psycopg://user:pass@db:5432/app")

    # Criptografia das senhas da Olé (base64 de 32 bytes)
    encryption_key: str = Field(..., description="Chave AES-256 em base64")

    # API Olé TV
    api_base_url: str = Field(default="https://api.oletv.net.br")
    api_timeout_s: float = Field(default=30)
    min_call_interval_ms: int = Field(default=300)
    rate_limit_max_retries: int = Field(default=3)
    rate_limit_default_wait_s: float = Field(default=5)
    credentials_cache_ttl_s: int = Field(default=300)

    # Fila
    queue_batch_size: int = Field(default=10)
    queue_interval_s: int = Field(default=30)
    queue_max_attempts: int = Field(default=5)
    backoff_base_s: int = Field(default=30)
    backoff_max_s: int = Field(default=3600)
    stuck_processing_minutes: int = Field(default=30)
    processor_max_workers: int = Field(default=1)

    # Importação (Olé → banco local)
    import_batch_size: int = Field(default=10)
    import_page_size: int = Field(default=100)
    import_max_pages: int = Field(default=1000)
    import_interval_s: int = Field(default=0, description="0 desliga a importação periódica")

    # Mapeamento de produtos
    mapping_cache_ttl_s: int = Field(default=300)
