from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ImapServer(BaseModel):
    """Connection parameters for one IMAP account"""

    user_name: str
    password: str
    host: str
    port: int = 993
    use_ssl: bool = True
    auth_timeout: float = Field(default=2.0, description="Seconds to wait for the greeting and login.")
    timeout: float = Field(default=10.0, description="Seconds aioimaplib waits for each command.")

    def masked(self) -> "ImapServer":
        return self.model_copy(update={"password": "********"})


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="IMAP_SIMPLE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ImapServer | None = None
    fetch_timeout: float | None = Field(
        default=None,
        description="Seconds allowed to assemble one fetched message. None waits indefinitely.",
    )


_settings: Settings | None = None


def get_settings(reload: bool = False) -> Settings:
    global _settings
    if _settings is None or reload:
        _settings = Settings()
    return _settings
