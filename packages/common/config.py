from functools import lru_cache
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

from .errors import MisconfigurationError


class Settings(BaseSettings):
    """Strongly-typed settings model loaded from env / .env.

    Notes:
        - Vendor credentials are optional at load time so the services can boot
          in simulated mode; anything missing is reported as a misconfiguration
          at the point of use, before any external call is attempted.
        - An empty `STORE_DSN` selects the in-memory metadata store.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        protected_namespaces=()
    )

    ENV: str = Field(default="dev", description="Deployment environment, e.g. dev/staging/prod")
    SERVICE_NAME: str = Field(default="schoolchat", description="Service name")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")
    FRONTEND_ORIGINS: str = Field(default="http://localhost:3000", description="Comma-separated CORS origins")

    AZURE_OPENAI_ENDPOINT: str = Field(default="", description="Azure OpenAI resource endpoint (https)")
    AZURE_OPENAI_API_KEY: str = Field(default="", description="Azure OpenAI API key")
    AZURE_OPENAI_DEPLOYMENT: str = Field(default="", description="Chat-completions deployment name")
    AZURE_OPENAI_API_VERSION: str = Field(default="", description="Azure OpenAI API version")

    AZURE_CONTENT_SAFETY_ENDPOINT: str = Field(default="", description="Azure Content Safety endpoint (https)")
    AZURE_CONTENT_SAFETY_KEY: str = Field(default="", description="Azure Content Safety subscription key")

    ACS_ENDPOINT: str = Field(default="", description="Azure Communication Services endpoint; empty = simulated transport")
    ACS_ACCESS_TOKEN: str = Field(default="", description="Chat-scoped ACS access token of the service identity")

    STORE_DSN: str = Field(default="", description="SQLAlchemy async DSN; empty = in-memory store")
    STORE_MESSAGE_CONTENT: bool = Field(default=True, description="Keep a local copy of message content in the store")
    DEFAULT_SCHOOL_ID: str = Field(default="demo-school", description="School whose official rules are seeded")

    TRANSPORT_MAX_MESSAGE_CHARS: int = Field(default=8000, description="Simulated transport message size limit")
    ASSISTANT_MAX_MESSAGE_LENGTH: int = Field(default=800, description="Max characters of the latest assistant question")
    HTTP_TIMEOUT_SECONDS: float = Field(default=30.0, description="Timeout for outbound vendor calls")

    JWT_PUBLIC_KEY: str = Field(default="", description="JWT public key for audit endpoints")
    OIDC_AUDIENCE: str = Field(default="", description="OIDC audience")

    def openai_configured(self) -> bool:
        """True when every Azure OpenAI setting is present."""
        return all((
            self.AZURE_OPENAI_ENDPOINT,
            self.AZURE_OPENAI_API_KEY,
            self.AZURE_OPENAI_DEPLOYMENT,
            self.AZURE_OPENAI_API_VERSION,
        ))

    def content_safety_configured(self) -> bool:
        return bool(self.AZURE_CONTENT_SAFETY_ENDPOINT and self.AZURE_CONTENT_SAFETY_KEY)

    def acs_configured(self) -> bool:
        return bool(self.ACS_ENDPOINT and self.ACS_ACCESS_TOKEN)

    def chat_completions_url(self) -> str:
        """Return the Azure OpenAI chat-completions URL for the configured deployment.

        Raises:
            MisconfigurationError: if any Azure OpenAI setting is missing or the
                endpoint is not https.
        """
        if not self.openai_configured():
            raise MisconfigurationError("Azure OpenAI credentials are missing")
        endpoint = normalize_endpoint(self.AZURE_OPENAI_ENDPOINT, "AZURE_OPENAI_ENDPOINT")
        return (
            f"{endpoint}openai/deployments/{self.AZURE_OPENAI_DEPLOYMENT}"
            f"/chat/completions?api-version={self.AZURE_OPENAI_API_VERSION}"
        )

    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.FRONTEND_ORIGINS.split(",") if o.strip()]


def normalize_endpoint(raw: str, name: str) -> str:
    """Validate a vendor endpoint and return it with a trailing slash.

    Raises:
        MisconfigurationError: if the endpoint is empty or does not use https.
    """
    if not raw:
        raise MisconfigurationError(f"Missing {name}")
    if urlparse(raw).scheme != "https":
        raise MisconfigurationError(f"{name} must use https://")
    return raw if raw.endswith("/") else f"{raw}/"


@lru_cache()
def get_settings() -> Settings:
    """Return a cached singleton `Settings` instance."""
    return Settings()
