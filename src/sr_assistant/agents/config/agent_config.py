"""
Agent Configuration
Centralized configuration for the service request assistant
"""

import os
from typing import Optional
from dataclasses import dataclass
from urllib.parse import urlparse

DEFAULT_OFFERINGS_TEMPLATE_ID = "0E8A618E248140F2BE6B3C058B2C64AC"


def _float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


@dataclass
class AgentConfig:
    """Configuration for the Ivanti tenant, Azure OpenAI and session storage"""

    # Ivanti (Ticketing API) - REQUIRED
    ivanti_base_url: str
    ivanti_api_key: str
    ivanti_offerings_template_id: str

    # Azure OpenAI - REQUIRED
    azure_openai_endpoint: str
    azure_openai_deployment: str
    azure_openai_api_version: str
    azure_openai_api_key: str

    # Timeouts and retry policy
    ivanti_timeout: float
    ivanti_connect_timeout: float
    tool_retries: int
    tool_backoff_seconds: float
    tool_backoff_max_seconds: float
    identity_timeout: float
    catalog_cache_ttl: float

    # Generation
    llm_timeout: float
    llm_temperature: float
    llm_max_tokens: int
    llm_history_window: int

    # Logout detectors (seconds, 0 disables)
    liveness_check_interval: float
    auth_probe_interval: float

    # Cosmos DB (durable session mirror) - OPTIONAL
    cosmos_endpoint: Optional[str] = None
    cosmos_key: Optional[str] = None
    cosmos_database: str = "sr-assistant"
    cosmos_container: str = "session"

    # Server
    server_host: str = "0.0.0.0"
    server_port: int = 3978
    log_level: str = "INFO"

    def __init__(self):
        """Load configuration from environment variables"""
        # Ivanti
        self.ivanti_base_url = os.getenv("IVANTI_BASE_URL", "").rstrip("/")
        self.ivanti_api_key = os.getenv("IVANTI_API_KEY", "")
        self.ivanti_offerings_template_id = os.getenv(
            "IVANTI_OFFERINGS_TEMPLATE_ID", DEFAULT_OFFERINGS_TEMPLATE_ID
        )

        # Azure OpenAI
        self.azure_openai_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT", "")
        self.azure_openai_deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")
        self.azure_openai_api_version = os.getenv("AZURE_OPENAI_API_VERSION", "")
        self.azure_openai_api_key = os.getenv("AZURE_OPENAI_API_KEY", "")

        # Tool calls
        self.ivanti_timeout = _float("IVANTI_TIMEOUT", "8")
        self.ivanti_connect_timeout = _float("IVANTI_CONNECT_TIMEOUT", "10")
        self.tool_retries = int(os.getenv("TOOL_RETRIES", "2"))
        self.tool_backoff_seconds = _float("TOOL_BACKOFF_SECONDS", "0.5")
        self.tool_backoff_max_seconds = _float("TOOL_BACKOFF_MAX_SECONDS", "4")
        self.identity_timeout = _float("IDENTITY_TIMEOUT", "10")
        self.catalog_cache_ttl = _float("CATALOG_CACHE_TTL", "14400")

        # Generation
        self.llm_timeout = _float("LLM_TIMEOUT", "60")
        self.llm_temperature = _float("LLM_TEMPERATURE", "0.3")
        self.llm_max_tokens = int(os.getenv("LLM_MAX_TOKENS", "1500"))
        self.llm_history_window = int(os.getenv("LLM_HISTORY_WINDOW", "20"))

        # Detectors
        self.liveness_check_interval = _float("LIVENESS_CHECK_INTERVAL", "300")
        self.auth_probe_interval = _float("AUTH_PROBE_INTERVAL", "120")

        # Cosmos DB
        self.cosmos_endpoint = os.getenv("COSMOSDB_ENDPOINT")
        self.cosmos_key = os.getenv("COSMOSDB_KEY")
        self.cosmos_database = os.getenv("COSMOSDB_DATABASE", "sr-assistant")
        self.cosmos_container = os.getenv("COSMOSDB_CONTAINER", "session")

        # Server
        self.server_host = os.getenv("SERVER_HOST", "0.0.0.0")
        self.server_port = int(os.getenv("SERVER_PORT", "3978"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

    @property
    def ivanti_domain(self) -> str:
        """Host name of the Ivanti tenant, used to filter cookie notifications."""
        return urlparse(self.ivanti_base_url).hostname or ""

    def validate(self) -> bool:
        """Validate required configuration"""
        required = [
            ("IVANTI_BASE_URL", self.ivanti_base_url),
            ("IVANTI_API_KEY", self.ivanti_api_key),
            ("AZURE_OPENAI_ENDPOINT", self.azure_openai_endpoint),
            ("AZURE_OPENAI_DEPLOYMENT", self.azure_openai_deployment),
            ("AZURE_OPENAI_API_VERSION", self.azure_openai_api_version),
            ("AZURE_OPENAI_API_KEY", self.azure_openai_api_key),
        ]

        missing = []
        for name, value in required:
            if not value or value.startswith("your-"):
                missing.append(name)

        if missing:
            raise ValueError(
                f"Missing or invalid required configuration: {', '.join(missing)}\n"
                f"Please update your .env file with valid values."
            )

        if self.tool_retries < 0:
            raise ValueError("TOOL_RETRIES must be 0 or greater")

        return True

    def __str__(self) -> str:
        """String representation (safe - no sensitive data)"""
        return f"""AgentConfig:
  Ivanti Base URL: {self.ivanti_base_url}
  Offerings Template: {self.ivanti_offerings_template_id}
  Azure OpenAI Endpoint: {self.azure_openai_endpoint[:50]}...
  Deployment: {self.azure_openai_deployment}
  API Version: {self.azure_openai_api_version}
  Tool Timeout: {self.ivanti_timeout}s (retries={self.tool_retries})
  Catalog Cache TTL: {self.catalog_cache_ttl}s
  Liveness Check: {self.liveness_check_interval}s
  Auth Probe: {self.auth_probe_interval}s
  Cosmos Endpoint: {(self.cosmos_endpoint or 'in-memory')[:50]}
  Cosmos Database: {self.cosmos_database}
  Cosmos Container: {self.cosmos_container}
  Server: {self.server_host}:{self.server_port}
  Log Level: {self.log_level}
"""
